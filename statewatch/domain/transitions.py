from __future__ import annotations

import json
import string
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable

from statewatch.core.errors import MalformedSnapshotError, ValidationError
from statewatch.domain.models import TENANT_WIDE


DEFAULT_NOTIFICATION_KIND = "entity-entered-state"
AUDIENCE_TENANT = "tenant"
AUDIENCE_ACTOR = "actor"
# Snapshot key read for actor-scoped rules.
ASSIGNEE_KEY = "assignee_id"
# Always available to templates, never read from the snapshot.
_ENTITY_FIELDS = ("entity_id", "entity_type", "status")


@dataclass(frozen=True)
class WatchedEntity:
    """Current state of a business record as exposed by the read model."""

    tenant_id: str
    entity_id: str
    entity_type: str
    status: str
    status_changed_at: datetime
    # Raw read-model payload; rules reject anything that is not a JSON object.
    snapshot: Any = field(default_factory=dict)


@dataclass(frozen=True)
class RenderedNotification:
    audience: str
    message: str
    deep_link: str | None


@dataclass(frozen=True)
class TriggerRule:
    """A (entity_type, status) pair whose entry raises a notification."""

    entity_type: str
    status: str
    kind: str = DEFAULT_NOTIFICATION_KIND
    message_template: str = "{entity_type} {entity_id} entered {status}"
    deep_link_template: str | None = None
    audience: str = AUDIENCE_TENANT

    def __post_init__(self) -> None:
        if not self.entity_type or not self.status or not self.kind:
            raise ValidationError("trigger rules require entity_type, status and kind")
        if self.audience not in {AUDIENCE_TENANT, AUDIENCE_ACTOR}:
            raise ValidationError(f"unsupported trigger audience: {self.audience}")
        for template in (self.message_template, self.deep_link_template):
            if template is None:
                continue
            try:
                list(string.Formatter().parse(template))
            except ValueError as exc:
                raise ValidationError(f"invalid trigger template: {template!r}") from exc

    def matches(self, entity: WatchedEntity) -> bool:
        return entity.entity_type == self.entity_type and entity.status == self.status

    def snapshot_fields(self) -> frozenset[str]:
        """Top-level snapshot keys this rule reads; the audit trail keeps only these."""
        fields: set[str] = set()
        for template in (self.message_template, self.deep_link_template):
            if template is None:
                continue
            for _, field_name, _, _ in string.Formatter().parse(template):
                if field_name:
                    fields.add(field_name.split(".", 1)[0].split("[", 1)[0])
        if self.audience == AUDIENCE_ACTOR:
            fields.add(ASSIGNEE_KEY)
        return frozenset(fields - set(_ENTITY_FIELDS))

    def render(self, entity: WatchedEntity) -> RenderedNotification:
        snapshot = require_object_snapshot(entity)
        context: dict[str, Any] = dict(snapshot)
        context.update(
            entity_id=entity.entity_id,
            entity_type=entity.entity_type,
            status=entity.status,
        )
        message = _format(self.message_template, context, entity)
        deep_link = _format(self.deep_link_template, context, entity) if self.deep_link_template else None
        return RenderedNotification(
            audience=self._resolve_audience(entity),
            message=message,
            deep_link=deep_link,
        )

    def _resolve_audience(self, entity: WatchedEntity) -> str:
        if self.audience == AUDIENCE_TENANT:
            return TENANT_WIDE
        assignee = require_object_snapshot(entity).get(ASSIGNEE_KEY)
        if not isinstance(assignee, str) or not assignee or assignee == TENANT_WIDE:
            raise MalformedSnapshotError(
                f"{entity.entity_type} {entity.entity_id} snapshot lacks {ASSIGNEE_KEY}"
            )
        return assignee


def require_object_snapshot(entity: WatchedEntity) -> dict[str, Any]:
    if entity.snapshot is None:
        return {}
    if not isinstance(entity.snapshot, dict):
        raise MalformedSnapshotError(
            f"{entity.entity_type} {entity.entity_id} snapshot is {type(entity.snapshot).__name__}, not an object"
        )
    return entity.snapshot


def _format(template: str, context: dict[str, Any], entity: WatchedEntity) -> str:
    try:
        return template.format(**context)
    except (KeyError, IndexError, ValueError, AttributeError) as exc:
        raise MalformedSnapshotError(
            f"{entity.entity_type} {entity.entity_id} snapshot cannot render {template!r}: {exc}"
        ) from exc


def parse_trigger_rules(raw: str | Iterable[dict[str, Any]]) -> list[TriggerRule]:
    # Accept the JSON setting or already-decoded dicts.
    if isinstance(raw, str):
        try:
            decoded = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ValidationError("detector trigger rules are not valid JSON") from exc
    else:
        decoded = list(raw)
    if not isinstance(decoded, list):
        raise ValidationError("detector trigger rules must be a JSON list")
    rules: list[TriggerRule] = []
    seen: set[tuple[str, str]] = set()
    for item in decoded:
        if not isinstance(item, dict):
            raise ValidationError("each trigger rule must be an object")
        try:
            rule = TriggerRule(**item)
        except TypeError as exc:
            raise ValidationError(f"invalid trigger rule fields: {exc}") from exc
        key = (rule.entity_type, rule.status)
        if key in seen:
            raise ValidationError(f"duplicate trigger rule: {key}")
        seen.add(key)
        rules.append(rule)
    return rules


def rules_by_entity_type(rules: Iterable[TriggerRule]) -> dict[str, list[TriggerRule]]:
    grouped: dict[str, list[TriggerRule]] = {}
    for rule in rules:
        grouped.setdefault(rule.entity_type, []).append(rule)
    return grouped
