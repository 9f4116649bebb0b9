from __future__ import annotations

import bisect
import inspect
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional


class FunctionKind(str, Enum):
    COMMON = "common"
    LOOKBACK = "lookback"
    INDICATOR = "indicator"


@dataclass(frozen=True)
class FunctionSpec:
    """A named function factory and the metadata shown to users."""

    name: str
    kind: FunctionKind
    factory: Callable[..., Any]
    description: str = ""
    args: str = ""
    side_effect: bool = False


def _argument_names(factory: Callable[..., Any], skip: int) -> str:
    params = list(inspect.signature(factory).parameters.values())[skip:]
    names: List[str] = []
    for p in params:
        if p.kind is inspect.Parameter.VAR_POSITIONAL:
            names.append(p.name + "...")
        else:
            names.append(p.name)
    return ", ".join(names)


def registrar(
    table: Dict[str, FunctionSpec], kind: FunctionKind
) -> Callable[..., Callable[[Callable[..., Any]], Callable[..., Any]]]:
    """Return a decorator factory adding functions of ``kind`` to ``table``.

    Common and lookback factories take the session options first; indicator
    factories take only their literal parameters.
    """

    skip = 0 if kind is FunctionKind.INDICATOR else 1

    def register(
        name: str, description: str = "", *, side_effect: bool = False
    ) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        def decorator(factory: Callable[..., Any]) -> Callable[..., Any]:
            if name in table:
                raise ValueError(f"Duplicate {kind.value} function: {name}")
            table[name] = FunctionSpec(
                name=name,
                kind=kind,
                factory=factory,
                description=description or (inspect.getdoc(factory) or ""),
                args=_argument_names(factory, skip),
                side_effect=side_effect,
            )
            return factory

        return decorator

    return register


class FunctionRegistry:
    """Three-tier function lookup: common, then lookback, then indicators.

    Indicator functions are called as ``interval.NAME``; the registry stores
    them by bare name and resolves the qualified form.
    """

    def __init__(self) -> None:
        self._tiers: Dict[FunctionKind, Dict[str, FunctionSpec]] = {
            kind: {} for kind in FunctionKind
        }

    def register(self, spec: FunctionSpec) -> None:
        tier = self._tiers[spec.kind]
        if spec.name in tier:
            raise ValueError(f"Duplicate {spec.kind.value} function: {spec.name}")
        tier[spec.name] = spec

    def register_all(self, specs: Iterable[FunctionSpec]) -> "FunctionRegistry":
        for spec in specs:
            self.register(spec)
        return self

    def get(self, name: str) -> Optional[FunctionSpec]:
        for kind in (FunctionKind.COMMON, FunctionKind.LOOKBACK):
            spec = self._tiers[kind].get(name)
            if spec is not None:
                return spec
        if name.find(".") > 0:
            return self._tiers[FunctionKind.INDICATOR].get(name[name.index(".") + 1 :])
        return None

    def names(self, intervals: Iterable[str] = ()) -> List[str]:
        """Every callable name, with indicators qualified by each interval."""

        names = list(self._tiers[FunctionKind.COMMON])
        names.extend(self._tiers[FunctionKind.LOOKBACK])
        for indicator in self._tiers[FunctionKind.INDICATOR]:
            names.extend(f"{interval}.{indicator}" for interval in intervals)
        return sorted(names)

    def similar(self, name: str, intervals: Iterable[str] = (), spread: int = 5) -> List[str]:
        """Names sorting closest to ``name``, ``spread`` on either side."""

        names = self.names(intervals)
        idx = bisect.bisect_left(names, name)
        return names[max(idx - spread, 0) : idx + spread]

    def describe(self, name: str) -> Dict[str, Any]:
        spec = self.get(name)
        if spec is None:
            raise KeyError(name)
        return {
            "name": name,
            "kind": spec.kind.value,
            "args": spec.args,
            "description": spec.description,
            "side_effect": spec.side_effect,
        }


__all__ = ["FunctionKind", "FunctionSpec", "FunctionRegistry", "registrar"]
