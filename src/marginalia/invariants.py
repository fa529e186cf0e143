"""Invariant markers."""

from __future__ import annotations

from typing import NoReturn

from marginalia.exceptions import InvariantViolation


def never(reason: str = "", **env: object) -> NoReturn:
    """Mark a code path as unreachable.

    The keyword payload is attached to the raised exception so callers and
    logs can see the state that broke the invariant.
    """
    raise InvariantViolation(reason or "never() marker reached", env=env)
