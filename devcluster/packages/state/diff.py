from typing import Any

from pydantic import BaseModel, Field

from .types import ClusterSpec

# Changing these means tearing the cluster down
RECREATE_FIELDS = frozenset({"distribution", "provider"})


class SpecChange(BaseModel):
    field: str
    old_value: Any
    new_value: Any


class SpecDiff(BaseModel):
    in_place: list[SpecChange] = Field(default_factory=list)
    recreate_required: list[SpecChange] = Field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        return bool(self.in_place or self.recreate_required)


def _flatten(data: dict[str, Any], prefix: str = "") -> dict[str, Any]:
    flat: dict[str, Any] = {}
    for key, value in data.items():
        path = f"{prefix}{key}"
        if isinstance(value, dict):
            flat.update(_flatten(value, prefix=f"{path}."))
        else:
            flat[path] = value
    return flat


def diff_cluster_specs(old: ClusterSpec, new: ClusterSpec) -> SpecDiff:
    """Compare a saved spec with the desired one, field by field."""
    old_fields = _flatten(old.model_dump(mode="json"))
    new_fields = _flatten(new.model_dump(mode="json"))

    result = SpecDiff()
    for path in sorted(old_fields.keys() | new_fields.keys()):
        old_value = old_fields.get(path)
        new_value = new_fields.get(path)
        if old_value == new_value:
            continue

        change = SpecChange(field=path, old_value=old_value, new_value=new_value)
        if path.split(".", 1)[0] in RECREATE_FIELDS:
            result.recreate_required.append(change)
        else:
            result.in_place.append(change)

    return result
