from __future__ import annotations

import copy
import hashlib
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

PRICE_FIELDS = ("open", "high", "low", "close")
ALL_PRICE_FIELDS = PRICE_FIELDS + ("volume",)


class IndicatorType(str, Enum):
    SMA = "SMA"
    EMA = "EMA"
    RSI = "RSI"
    MACD = "MACD"
    BOLLINGER = "Bollinger"
    ATR = "ATR"


class ConditionType(str, Enum):
    PRICE_ABOVE = "price_above"
    PRICE_BELOW = "price_below"
    CROSS_OVER = "cross_over"
    CROSS_UNDER = "cross_under"
    EQUALS = "equals"

    # Aliases
    GREATER_THAN = "price_above"
    LESS_THAN = "price_below"


OPERATORS = {
    ConditionType.PRICE_ABOVE: ">",
    ConditionType.PRICE_BELOW: "<",
    ConditionType.CROSS_OVER: "crosses above",
    ConditionType.CROSS_UNDER: "crosses below",
    ConditionType.EQUALS: "==",
}


class SignalKind(str, Enum):
    ENTRY = "Entry"
    EXIT = "Exit"


@dataclass
class Indicator:
    name: str
    type: IndicatorType
    parameters: dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "type": self.type.value, "parameters": dict(self.parameters)}

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "Indicator":
        return cls(
            name=str(raw["name"]),
            type=IndicatorType(raw["type"]),
            parameters={str(k): float(v) for k, v in dict(raw.get("parameters", {})).items()},
        )


@dataclass
class Condition:
    left: str
    right: str
    type: ConditionType

    @property
    def expression(self) -> str:
        return f"{self.left} {OPERATORS[self.type]} {self.right}"

    def operands(self) -> tuple[str, str]:
        return self.left, self.right

    def to_dict(self) -> dict[str, Any]:
        return {"left": self.left, "right": self.right, "type": self.type.value}

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "Condition":
        return cls(left=str(raw["left"]), right=str(raw["right"]), type=ConditionType(raw["type"]))


@dataclass
class Signal:
    name: str
    kind: SignalKind
    conditions: list[Condition] = field(default_factory=list)

    @property
    def expression(self) -> str:
        return " AND ".join(c.expression for c in self.conditions)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "kind": self.kind.value,
            "expression": self.expression,
            "conditions": [c.to_dict() for c in self.conditions],
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "Signal":
        return cls(
            name=str(raw["name"]),
            kind=SignalKind(raw["kind"]),
            conditions=[Condition.from_dict(c) for c in raw.get("conditions", [])],
        )


@dataclass
class Theory:
    name: str
    symbols: list[str]
    indicators: list[Indicator]
    entry_signal: Signal
    exit_signal: Signal
    parameters: dict[str, float] = field(default_factory=dict)

    @property
    def primary_symbol(self) -> str:
        if not self.symbols:
            raise ValueError(f"Theory {self.name} has no symbols")
        return self.symbols[0]

    def indicator_names(self) -> list[str]:
        return [i.name for i in self.indicators]

    def copy(self, **changes: Any) -> "Theory":
        """Deep copy; keyword arguments replace fields on the copy."""
        clone = copy.deepcopy(self)
        for key, value in changes.items():
            setattr(clone, key, copy.deepcopy(value))
        return clone

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "symbols": list(self.symbols),
            "indicators": [i.to_dict() for i in self.indicators],
            "entry_signal": self.entry_signal.to_dict(),
            "exit_signal": self.exit_signal.to_dict(),
            "parameters": dict(self.parameters),
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "Theory":
        return cls(
            name=str(raw["name"]),
            symbols=[str(s) for s in raw.get("symbols", [])],
            indicators=[Indicator.from_dict(i) for i in raw.get("indicators", [])],
            entry_signal=Signal.from_dict(raw["entry_signal"]),
            exit_signal=Signal.from_dict(raw["exit_signal"]),
            parameters={str(k): float(v) for k, v in dict(raw.get("parameters", {})).items()},
        )


def theory_id(theory: Theory) -> str:
    payload = theory.to_dict()
    payload.pop("name", None)
    raw = json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")
    return hashlib.sha256(raw).hexdigest()[:16]
