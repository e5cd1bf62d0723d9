"""
Shared pydantic base for records persisted as camelCase JSON.
"""

from typing import Any, Dict

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Snake_case attributes, camelCase on the wire and on disk."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )

    def to_json_dict(self) -> dict:
        """Dump by alias into JSON-compatible primitives."""
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)


def merge_model(model: BaseModel, patch: Dict[str, Any]) -> BaseModel:
    """
    Return a validated copy of model with patch applied.

    Patch keys may be field names or aliases; nested models are merged
    recursively rather than replaced.

    Raises:
        ValueError: Unknown key or the merged data does not validate
    """
    fields = type(model).model_fields
    names = {(info.alias or name): name for name, info in fields.items()}
    updates: Dict[str, Any] = {}
    for key, value in patch.items():
        name = key if key in fields else names.get(key)
        if name is None:
            raise ValueError(f"Unknown field: {key}")
        current = getattr(model, name)
        if isinstance(current, BaseModel) and isinstance(value, dict):
            updates[name] = merge_model(current, value)
        else:
            updates[name] = value
    data = {name: getattr(model, name) for name in fields}
    data.update(updates)
    return type(model).model_validate(data)
