"""Model registry: family name → specification bundle.

Each registered model couples a fitting function, a parameter sampler
and a quantity-of-interest function with its outcome category.  The
registry is written once at package import (see
:func:`zelig2.families.register_builtin_models`) and is read-only
afterwards; re-registering a name overwrites the previous entry.

Third-party models can be added with :func:`register_model`::

    from zelig2.registry import register_model

    register_model(
        "mymodel",
        fit=my_fit,
        draw_parameters=draw_mvn,
        quantities_of_interest=my_qi,
        category="continuous",
        description="My custom model",
    )
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from .exceptions import ModelNotFoundError

logger = logging.getLogger(__name__)

CATEGORIES: frozenset[str] = frozenset({"continuous", "binary", "count"})


@dataclass(frozen=True)
class ModelSpec:
    """Immutable specification bundle for one model family.

    Attributes:
        name: Registry key, e.g. ``"logit"``.
        category: ``"continuous"``, ``"binary"`` or ``"count"``.
            Binary models produce probabilities in ``[0, 1]``; count
            models produce non-negative expected values.
        description: Human-readable label used by the display layer.
        fit: ``fit(formula, data, survey_design=None,
            weights_column=None, **extra) -> BackendFit``.
        draw_parameters: ``draw_parameters(coefficients, vcov, num,
            rng) -> ndarray`` of shape ``(num, p)``.
        quantities_of_interest: ``qi(params, x_row, fitted_model,
            fe_offset=0.0, rng=None) -> {"ev": ..., "pv": ...}``.
        supports_fixed_effects: Whether ``y ~ x | fe`` syntax is accepted.
        supports_survey: Whether a survey design changes the fit.
        family: The family object that produced the callables, if any.
    """

    name: str
    category: str
    description: str
    fit: Callable[..., Any] = field(repr=False)
    draw_parameters: Callable[..., Any] = field(repr=False)
    quantities_of_interest: Callable[..., Any] = field(repr=False)
    supports_fixed_effects: bool = True
    supports_survey: bool = True
    family: Any = field(default=None, repr=False, compare=False)

    def __post_init__(self) -> None:
        if self.category not in CATEGORIES:
            msg = (
                f"Invalid category '{self.category}' for model "
                f"'{self.name}'. Choose from: {sorted(CATEGORIES)}"
            )
            raise ValueError(msg)


_REGISTRY: dict[str, ModelSpec] = {}


def register_model(
    name: str,
    fit: Callable[..., Any],
    draw_parameters: Callable[..., Any],
    quantities_of_interest: Callable[..., Any],
    category: str,
    description: str | None = None,
    **properties: Any,
) -> ModelSpec:
    """Register (or overwrite) a model specification.

    Args:
        name: Registry key.  Must be a non-empty string.
        fit: Fitting function.
        draw_parameters: Parameter sampler.
        quantities_of_interest: QI function.
        category: ``"continuous"``, ``"binary"`` or ``"count"``.
        description: Display label; defaults to *name*.
        **properties: Extra :class:`ModelSpec` fields
            (``supports_fixed_effects``, ``supports_survey``, ``family``).

    Returns:
        The stored :class:`ModelSpec`.

    Raises:
        ValueError: If *name* is empty or *category* is invalid.
    """
    if not isinstance(name, str) or not name:
        msg = f"Model name must be a non-empty string, got {name!r}."
        raise ValueError(msg)
    spec = ModelSpec(
        name=name,
        category=category,
        description=description or name,
        fit=fit,
        draw_parameters=draw_parameters,
        quantities_of_interest=quantities_of_interest,
        **properties,
    )
    if name in _REGISTRY:
        logger.debug("Overwriting registered model '%s'", name)
    _REGISTRY[name] = spec
    return spec


def get_model_spec(name: str) -> ModelSpec:
    """Look up a registered model.

    Raises:
        ModelNotFoundError: If *name* is not registered.  The message
            lists every registered name.
    """
    try:
        return _REGISTRY[name]
    except (KeyError, TypeError):
        msg = (
            f"Model '{name}' not found. "
            f"Available models: {', '.join(list_models())}"
        )
        raise ModelNotFoundError(msg) from None


def list_models() -> list[str]:
    """Return the sorted names of all registered models."""
    return sorted(_REGISTRY)
