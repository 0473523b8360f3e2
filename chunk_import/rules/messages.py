from __future__ import annotations

from collections.abc import Mapping

"""Default validation messages and placeholder rendering.

Placeholders: :attribute, :min, :max, :values, :other, :format.
Overrides are looked up as "<attribute>.<kind>" then "<kind>"; wildcard rules
additionally honor "*.<attribute>.<kind>" first.
"""

__all__ = [
    "DEFAULT_MESSAGES",
    "MessageResolver",
]

DEFAULT_MESSAGES: dict[str, str] = {
    "required": "the :attribute field is required",
    "string": ":attribute must be a string",
    "numeric": ":attribute must be a number",
    "integer": ":attribute must be an integer",
    "boolean": ":attribute must be true or false",
    "email": "invalid email",
    "date": ":attribute is not a valid date",
    "date_format": ":attribute does not match the format :format",
    "min": ":attribute must be at least :min",
    "max": ":attribute must not be greater than :max",
    "between": ":attribute must be between :min and :max",
    "in": "selected :attribute is invalid",
    "not_in": "selected :attribute is invalid",
    "regex": ":attribute format is invalid",
    "same": ":attribute and :other must match",
    "different": ":attribute and :other must be different",
    "distinct": ":attribute has a duplicate value",
}


class MessageResolver:
    """Render messages using the custom message / attribute override tables."""

    def __init__(
        self,
        custom_messages: Mapping[str, str] | None = None,
        custom_attributes: Mapping[str, str] | None = None,
    ) -> None:
        self.custom_messages = dict(custom_messages or {})
        self.custom_attributes = dict(custom_attributes or {})

    def display_name(self, attribute: str) -> str:
        return self.custom_attributes.get(attribute, attribute)

    def template(self, attribute: str, kind: str, wildcard: bool = False) -> str:
        keys = [f"{attribute}.{kind}", kind]
        if wildcard:
            keys.insert(0, f"*.{attribute}.{kind}")
        for key in keys:
            if key in self.custom_messages:
                return self.custom_messages[key]
        return DEFAULT_MESSAGES.get(kind, f":attribute failed {kind}")

    def render(
        self,
        attribute: str,
        kind: str,
        replacements: Mapping[str, str] | None = None,
        wildcard: bool = False,
    ) -> str:
        text = self.template(attribute, kind, wildcard)
        values = dict(replacements or {})
        if "other" in values:
            values["other"] = self.display_name(values["other"])
        # 長いキーから置換 (":attribute" 内の ":a..." 衝突回避)
        for key in sorted(values, key=len, reverse=True):
            text = text.replace(f":{key}", values[key])
        return text.replace(":attribute", self.display_name(attribute))
