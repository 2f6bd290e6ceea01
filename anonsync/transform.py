"""Anonymization of records on their way to the destination.

A :class:`TransformPolicy` maps column names to rules.  The rule set is a
superset of the columns of every table: a rule only fires when its column
is present in the record being transformed.

Rules depend on nothing but the record's key value, so transforming the
same source row always yields the same output.  That makes repeated syncs
converge (re-upserting an unchanged row is a no-op in effect) and makes
the transform idempotent.
"""

from __future__ import annotations

from typing import Any, Dict, Mapping, NamedTuple, Optional

from ._constants import DEFAULT_KEY_COLUMN
from .schema import Record


# bcrypt hash every anonymized account shares.
DEFAULT_PASSWORD_HASH = "$2a$11$xLlTmByr6signynyPCofs.TG1SP06OX2WjL5pRtRk5SdgjqhMcRly"


class Rule(NamedTuple):
    """Replacement for one column.

    ``template`` rules are ``str.format`` patterns rendered with the row's
    key value as ``{id}``; a record with a NULL key cannot be masked by
    them (see :meth:`TransformPolicy.apply`).
    ``constant`` rules replace the value outright.
    """

    kind: str
    value: Any

    def render(self, key_value: Any) -> Any:
        if self.kind == "template":
            return self.value.format(id=key_value)
        return self.value


def template(pattern: str) -> Rule:
    return Rule("template", pattern)


def constant(value: Any) -> Rule:
    return Rule("constant", value)


class TransformPolicy:
    """Column-name → :class:`Rule` mapping applied to records in place."""

    def __init__(self, rules: Mapping[str, Rule]) -> None:
        self._rules: Dict[str, Rule] = dict(rules)

    @classmethod
    def from_config(cls, config: Optional[Mapping[str, Any]]) -> "TransformPolicy":
        """Build a policy from the ``anonymize:`` config section.

        Each entry is ``column: {template: "..."}`` or
        ``column: {constant: ...}``; a bare value is shorthand for a
        constant.  ``None`` yields :data:`DEFAULT_POLICY`.
        """
        if config is None:
            return DEFAULT_POLICY
        if not isinstance(config, Mapping):
            raise TypeError(
                f"anonymize must be a mapping, got {type(config).__name__}"
            )
        rules: Dict[str, Rule] = {}
        for column, spec in config.items():
            if isinstance(spec, Mapping):
                if set(spec) == {"template"}:
                    rules[column] = template(str(spec["template"]))
                elif set(spec) == {"constant"}:
                    rules[column] = constant(spec["constant"])
                else:
                    raise ValueError(
                        f"rule for {column!r} must have exactly one of "
                        f"'template' or 'constant', got {sorted(spec)}"
                    )
            else:
                rules[column] = constant(spec)
        return cls(rules)

    @property
    def columns(self) -> frozenset:
        return frozenset(self._rules)

    def apply(self, record: Record, key: str = DEFAULT_KEY_COLUMN) -> Record:
        """Mask every ruled column present in *record*; returns *record*.

        Raises:
            ValueError: A ``template`` column holds a value but the record
                has no key value to render it with.  The record is left
                unwritten rather than passed through unmasked.
        """
        key_value = record.get(key)
        for column, rule in self._rules.items():
            if column not in record:
                continue
            if rule.kind == "template" and key_value is None:
                if record[column] is None:
                    continue
                raise ValueError(f"cannot mask {column!r}: key {key!r} is NULL")
            record[column] = rule.render(key_value)
        return record

    def __len__(self) -> int:
        return len(self._rules)

    def __repr__(self) -> str:
        return f"TransformPolicy(columns={sorted(self._rules)})"


DEFAULT_POLICY = TransformPolicy({
    "email": template("dev_hotel{id}@movefast.xyz"),
    "hotel_email": template("hotel_arch{id}@movefast.xyz"),
    "password": constant(DEFAULT_PASSWORD_HASH),
    "hotel_phone": constant("080-2222-2222"),
    "hotel_whatsapp": constant("080-1111-1111"),
})
