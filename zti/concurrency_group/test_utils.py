import threading


def wait_interval(seconds: float) -> None:
    """Block the calling thread for a short interval without busy-waiting."""
    threading.Event().wait(seconds)
