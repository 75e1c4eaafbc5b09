"""Package-wide defaults for the zelig2 package.

Two options are configurable:

* ``"num"`` — simulation draws used by ``sim()`` when a model was
  estimated without an explicit ``num`` (default 1000).
* ``"bootstrap_n"`` — resamples used by ``vcov_type="bootstrap"``
  (default 500).

Resolution order (first match wins):
    1. Programmatic override via :func:`set_option`.
    2. The ``ZELIG2_NUM`` / ``ZELIG2_BOOTSTRAP_N`` environment variables.
    3. The built-in default.

Examples:
    Lower the draw count for a quick interactive session::

        export ZELIG2_NUM=200

    or programmatically::

        import zelig2
        zelig2.set_option("num", 200)

    Restore the defaults::

        zelig2.reset_options()
"""

from __future__ import annotations

import os

_DEFAULTS: dict[str, int] = {"num": 1000, "bootstrap_n": 500}

_ENV_VARS: dict[str, str] = {
    "num": "ZELIG2_NUM",
    "bootstrap_n": "ZELIG2_BOOTSTRAP_N",
}

# Programmatic overrides; an absent key means "not set".
_overrides: dict[str, int] = {}


def _check_name(name: str) -> None:
    if name not in _DEFAULTS:
        msg = f"Unknown option '{name}'. Choose from: {sorted(_DEFAULTS)}"
        raise ValueError(msg)


def _validate(name: str, value: object) -> int:
    try:
        number = int(value)  # type: ignore[call-overload]
    except (TypeError, ValueError):
        msg = f"Option '{name}' must be a positive integer, got {value!r}."
        raise ValueError(msg) from None
    if number < 1:
        msg = f"Option '{name}' must be a positive integer, got {value!r}."
        raise ValueError(msg)
    return number


def get_option(name: str) -> int:
    """Return the active value of a package option.

    Args:
        name: ``"num"`` or ``"bootstrap_n"``.

    Returns:
        The resolved positive integer.

    Raises:
        ValueError: If *name* is unknown, or the environment variable
            does not hold a positive integer.
    """
    _check_name(name)

    # 1. Programmatic override
    if name in _overrides:
        return _overrides[name]

    # 2. Environment variable
    env = os.environ.get(_ENV_VARS[name], "").strip()
    if env:
        return _validate(name, env)

    # 3. Built-in default
    return _DEFAULTS[name]


def set_option(name: str, value: int) -> None:
    """Override a package option for the rest of the process.

    Args:
        name: ``"num"`` or ``"bootstrap_n"``.
        value: A positive integer.

    Raises:
        ValueError: If *name* is unknown or *value* is not a positive
            integer.
    """
    _check_name(name)
    _overrides[name] = _validate(name, value)


def reset_options() -> None:
    """Drop every programmatic override."""
    _overrides.clear()
