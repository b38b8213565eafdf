from __future__ import annotations

import os
from typing import Iterable, List

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def env_bool(name: str, *, default: bool = False) -> bool:
    """
    Read an environment variable as a boolean.

    Accepts common truthy/falsy strings; raises if the value cannot be parsed.
    """
    value = os.getenv(name)
    if value is None:
        return default
    lowered = value.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ValueError(f"Invalid boolean for {name!r}: {value!r}")


def env_list(name: str, *, default: Iterable[str] | None = None, separator: str = ",") -> List[str]:
    """
    Read a delimited list from an environment variable.

    Empty and missing values resolve to the provided default.
    """
    value = os.getenv(name)
    if value is None:
        if default is None:
            return []
        return [item for item in default]
    items = [item.strip() for item in value.split(separator)]
    return [item for item in items if item]


def env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value.strip())
    except ValueError:
        raise ValueError(f"Invalid integer for {name!r}: {value!r}") from None


def env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value.strip())
    except ValueError:
        raise ValueError(f"Invalid float for {name!r}: {value!r}") from None


__all__ = ["env_bool", "env_list", "env_int", "env_float"]
