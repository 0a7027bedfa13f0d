from typing import Any

from botocore.exceptions import BotoCoreError
from botocore.exceptions import ClientError
from pydantic import ValidationError as PydanticValidationError

from zti.zti_common.logging import log_call
from zti.zti_common.pure import pure
from zti.ztictl.api.data_types import TagFilter
from zti.ztictl.api.data_types import TargetSelector
from zti.ztictl.aws.clients import aws_error_code
from zti.ztictl.aws.clients import aws_error_message
from zti.ztictl.config.data_types import ZtictlContext
from zti.ztictl.errors import NoMatchingTargetsError
from zti.ztictl.errors import TargetResolutionError
from zti.ztictl.errors import TransportError
from zti.ztictl.errors import ValidationError
from zti.ztictl.primitives import INSTANCE_ID_PATTERN
from zti.ztictl.primitives import InstanceId

_RUNNING_FILTER: dict[str, Any] = {"Name": "instance-state-name", "Values": ["running"]}


@pure
def parse_tag_filters(raw: str) -> tuple[TagFilter, ...]:
    """Parse "Key=Value,Key2=Value2" into tag filters. Keys and values must be non-empty."""
    filters: list[TagFilter] = []
    for pair in raw.split(","):
        pair = pair.strip()
        if not pair:
            continue
        key, sep, value = pair.partition("=")
        if not sep or not key.strip() or not value.strip():
            raise ValidationError(f"Invalid tag filter {pair!r}: expected key=value with a non-empty key and value")
        filters.append(TagFilter(key=key, value=value))
    if not filters:
        raise ValidationError("At least one tag filter is required")
    return tuple(filters)


@pure
def parse_instance_ids(raw: str) -> tuple[InstanceId, ...]:
    """Parse a comma-separated list of instance ids, dropping duplicates but keeping order."""
    ids: list[InstanceId] = []
    for part in raw.split(","):
        part = part.strip()
        if not part:
            continue
        try:
            instance_id = InstanceId(part)
        except ValueError as e:
            raise ValidationError(str(e)) from e
        if instance_id not in ids:
            ids.append(instance_id)
    if not ids:
        raise ValidationError("At least one instance id is required")
    return tuple(ids)


@pure
def build_target_selector(tags: str | None, instances: str | None) -> TargetSelector:
    """Validate the two mutually exclusive ways of naming targets."""
    if tags and instances:
        raise ValidationError("--tags and --instances are mutually exclusive; use one of them")
    if not tags and not instances:
        raise ValidationError("One of --tags or --instances is required")
    try:
        if tags:
            return TargetSelector(tag_filters=parse_tag_filters(tags))
        assert instances is not None
        return TargetSelector(instance_ids=parse_instance_ids(instances))
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid target selector: {e}") from e


def _describe_instance_ids(ctx: ZtictlContext, filters: list[dict[str, Any]], step: str) -> list[str]:
    ec2 = ctx.clients.ec2(ctx.region)
    instance_ids: list[str] = []
    try:
        paginator = ec2.get_paginator("describe_instances")
        for page in paginator.paginate(Filters=filters):
            for reservation in page.get("Reservations", []):
                for instance in reservation.get("Instances", []):
                    instance_ids.append(instance["InstanceId"])
    except (BotoCoreError, ClientError) as e:
        raise TransportError(step, f"region {ctx.region}", aws_error_code(e), aws_error_message(e)) from e
    return instance_ids


@log_call
def resolve_instance(ctx: ZtictlContext, identifier: str) -> InstanceId:
    """Turn an instance id or a Name tag into an instance id.

    Ids are returned without an API call. A name must match exactly one running instance.
    """
    identifier = identifier.strip()
    if INSTANCE_ID_PATTERN.match(identifier):
        return InstanceId(identifier)
    if not identifier:
        raise ValidationError("Instance identifier cannot be empty")

    matches = _describe_instance_ids(
        ctx,
        [{"Name": "tag:Name", "Values": [identifier]}, _RUNNING_FILTER],
        "Resolve instance name",
    )
    if len(matches) == 0:
        raise TargetResolutionError(f"No running instance named {identifier!r} in {ctx.region}")
    if len(matches) > 1:
        raise TargetResolutionError(
            f"Instance name {identifier!r} is ambiguous in {ctx.region}: matches {', '.join(sorted(matches))}"
        )
    return InstanceId(matches[0])


@log_call
def resolve_targets(ctx: ZtictlContext, selector: TargetSelector) -> tuple[InstanceId, ...]:
    """Resolve a selector once into an ordered tuple of instance ids.

    Explicit ids keep the order given. Tag matches are sorted by id so the
    order is stable between runs. Raises NoMatchingTargetsError when empty.
    """
    if selector.instance_ids:
        return selector.instance_ids

    filters: list[dict[str, Any]] = [{"Name": f"tag:{f.key}", "Values": [f.value]} for f in selector.tag_filters]
    filters.append(_RUNNING_FILTER)
    matches = sorted(set(_describe_instance_ids(ctx, filters, "Resolve tagged targets")))
    if not matches:
        raise NoMatchingTargetsError(selector.describe())
    return tuple(InstanceId(m) for m in matches)
