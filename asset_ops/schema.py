"""Schema registry: the ordered, user-editable list of asset fields."""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional

from .auth import GRANTED, AuthorizationResult, User, invalid, require_admin

FIELD_TYPES = ("text", "number", "date", "select", "textarea")
# "multiline" is accepted as an alias of "textarea"
ACCEPTED_TYPES = FIELD_TYPES + ("multiline",)


@dataclass
class FieldDefinition:
    id: str
    label: str
    type: str = "text"
    options: List[str] = field(default_factory=list)
    width: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FieldDefinition":
        ftype = data.get("type", "text")
        if ftype == "multiline":
            ftype = "textarea"
        return cls(
            id=str(data["id"]),
            label=str(data.get("label", data["id"])),
            type=ftype if ftype in FIELD_TYPES else "text",
            options=[str(o) for o in (data.get("options") or [])],
            width=data.get("width"),
        )

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"id": self.id, "label": self.label, "type": self.type}
        if self.type == "select":
            out["options"] = list(self.options)
        if self.width:
            out["width"] = self.width
        return out


# Default columns of the field inventory sheet
DEFAULT_FIELDS = (
    {"id": "date", "label": "Date", "type": "date", "width": "w-24"},
    {"id": "assetId", "label": "Asset ID", "type": "text", "width": "w-32"},
    {"id": "materialType", "label": "Material Type", "type": "text"},
    {"id": "modelVariant", "label": "Model/Variant", "type": "text"},
    {"id": "nos", "label": "NOS", "type": "number", "width": "w-16"},
    {"id": "circle", "label": "Circle", "type": "text"},
    {"id": "division", "label": "Division", "type": "text"},
    {"id": "substation", "label": "Substation", "type": "text"},
    {"id": "status", "label": "Status", "type": "select",
     "options": ["Installed", "Spare", "Returned", "Planned", "Defective", "Maintenance"]},
    {"id": "assignedTo", "label": "Assigned To", "type": "text"},
    {"id": "plannedDate", "label": "Planned Date", "type": "date"},
    {"id": "replacementDate", "label": "Replacement Date", "type": "date"},
    {"id": "remarks", "label": "Remarks", "type": "textarea"},
    {"id": "lastUpdatedBy", "label": "Updated By", "type": "text"},
)

PATCHABLE = {"label", "type", "options", "width"}


def default_fields() -> List[FieldDefinition]:
    return [FieldDefinition.from_dict(f) for f in DEFAULT_FIELDS]


class SchemaRegistry:
    """Ordered field definitions. Only administrators may change them.

    Every mutation returns an ``AuthorizationResult`` instead of silently
    ignoring an unprivileged caller. Successful mutations are reported to
    ``on_change`` with the full new definition list, which is how the list
    reaches the local cache and the remote config table.
    """

    def __init__(self, fields: Optional[Iterable[FieldDefinition]] = None,
                 on_change: Optional[Callable[[List[Dict[str, Any]]], None]] = None) -> None:
        self._fields: List[FieldDefinition] = list(fields) if fields is not None else default_fields()
        self.on_change = on_change

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    @property
    def fields(self) -> List[FieldDefinition]:
        return list(self._fields)

    def field_ids(self) -> List[str]:
        return [f.id for f in self._fields]

    def labels(self) -> List[str]:
        return [f.label for f in self._fields]

    def get(self, field_id: str) -> Optional[FieldDefinition]:
        for f in self._fields:
            if f.id == field_id:
                return f
        return None

    def __contains__(self, field_id: object) -> bool:
        return any(f.id == field_id for f in self._fields)

    def __len__(self) -> int:
        return len(self._fields)

    def to_list(self) -> List[Dict[str, Any]]:
        return [f.to_dict() for f in self._fields]

    def load(self, definitions: Iterable[Dict[str, Any]]) -> None:
        """Replace the list from a stored snapshot (no privilege check)."""
        self._fields = [FieldDefinition.from_dict(d) for d in definitions]

    # ------------------------------------------------------------------
    # Guarded mutations
    # ------------------------------------------------------------------
    def _changed(self) -> None:
        if self.on_change:
            self.on_change(self.to_list())

    def add_field(self, actor: Optional[User], definition: Optional[Dict[str, Any]] = None) -> AuthorizationResult:
        check = require_admin(actor)
        if not check:
            return check
        data = dict(definition or {})
        data.setdefault("id", f"custom_{uuid.uuid4().hex[:12]}")
        data.setdefault("label", "New Field")
        data.setdefault("type", "text")
        if data.get("type") not in ACCEPTED_TYPES:
            return invalid(f"Unknown field type '{data.get('type')}'.")
        if data["id"] in self:
            return invalid(f"Field '{data['id']}' already exists.")
        self._fields.append(FieldDefinition.from_dict(data))
        self._changed()
        return GRANTED

    def update_field(self, actor: Optional[User], field_id: str, patch: Dict[str, Any]) -> AuthorizationResult:
        check = require_admin(actor)
        if not check:
            return check
        current = self.get(field_id)
        if current is None:
            return invalid(f"Unknown field '{field_id}'.")
        unknown = set(patch) - PATCHABLE
        if unknown:
            return invalid(f"Cannot change {', '.join(sorted(unknown))}.")
        if "type" in patch and patch["type"] not in ACCEPTED_TYPES:
            return invalid(f"Unknown field type '{patch['type']}'.")
        merged = {**current.to_dict(), **patch, "id": current.id}
        index = self._fields.index(current)
        self._fields[index] = FieldDefinition.from_dict(merged)
        self._changed()
        return GRANTED

    def remove_field(self, actor: Optional[User], field_id: str) -> AuthorizationResult:
        check = require_admin(actor)
        if not check:
            return check
        if field_id not in self:
            return invalid(f"Unknown field '{field_id}'.")
        # Existing records keep the key; it just stops being rendered
        self._fields = [f for f in self._fields if f.id != field_id]
        self._changed()
        return GRANTED

    def reorder(self, actor: Optional[User], field_ids: List[str]) -> AuthorizationResult:
        check = require_admin(actor)
        if not check:
            return check
        if sorted(field_ids) != sorted(self.field_ids()):
            return invalid("Order must list every existing field exactly once.")
        by_id = {f.id: f for f in self._fields}
        self._fields = [by_id[i] for i in field_ids]
        self._changed()
        return GRANTED
