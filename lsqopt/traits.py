"""Parameter traits: how the optimizer sees an arbitrary parameter object.

The optimizer never inspects parameters directly. It asks a
:class:`ParamsTrait` for the dimension of the tangent space, applies steps
through :meth:`ParamsTrait.pluseq` (the manifold update) and snapshots /
restores values with :meth:`ParamsTrait.copy` and :meth:`ParamsTrait.assign`.

Built-in traits cover Python and NumPy scalars, NumPy arrays (vectors and
matrices), lists of floats and torch tensors. User-defined parameter types
either follow the small protocol understood by :class:`ObjectTrait` or get a
dedicated trait through :func:`register_params_trait`.

Example
-------
>>> import numpy as np
>>> from lsqopt.traits import get_params_trait
>>> x = np.zeros(3)
>>> trait = get_params_trait(x)
>>> trait.dims(x)
3
>>> trait.pluseq(x, np.ones(3)) is x
True
"""

from __future__ import annotations

import copy
import numbers
from typing import Any, Callable, Dict, Optional, Type

import numpy as np
import torch

DYNAMIC = -1


def _as_delta(delta: Any) -> Any:
    if isinstance(delta, torch.Tensor):
        return delta.reshape(-1)
    return np.asarray(delta, dtype=float).reshape(-1)


class ParamsTrait:
    """Capability descriptor of a parameter type.

    Subclasses override what differs from the defaults. ``DIMS`` is either a
    fixed dimension or :data:`DYNAMIC` when it is only known at runtime.
    """

    scalar = np.float64
    DIMS: int = DYNAMIC

    def dims(self, x: Any) -> int:
        """Runtime dimension of the tangent space of ``x``."""
        if self.DIMS == DYNAMIC:
            raise ValueError(f"{type(self).__name__} must implement dims() for dynamic parameters")
        return self.DIMS

    def pluseq(self, x: Any, delta: Any) -> Any:
        """Apply the increment ``delta`` to ``x`` and return the updated parameters."""
        raise NotImplementedError

    def to_string(self, x: Any) -> str:
        return str(x)

    def cast(self, x: Any, dtype: Any) -> Any:
        """Return a copy of ``x`` whose numbers have type ``dtype``.

        Only needed when differentiating through ``x``; ``dtype`` is then a
        torch dtype.
        """
        raise NotImplementedError(f"{type(self).__name__} does not support cast()")

    def copy(self, x: Any) -> Any:
        return copy.deepcopy(x)

    def assign(self, dst: Any, src: Any) -> Any:
        """Overwrite ``dst`` with ``src`` and return the result."""
        dst.__dict__.update(copy.deepcopy(src.__dict__))
        return dst

    def check_dims(self, x: Any) -> int:
        """Return ``dims(x)``, raising when it contradicts the static dimension."""
        dims = self.dims(x)
        if self.DIMS != DYNAMIC and dims != self.DIMS:
            raise ValueError(
                f"Static and dynamic dimensions must match: {self.DIMS} != {dims}"
            )
        return dims


class ScalarTrait(ParamsTrait):
    """Python or NumPy real scalars, and 0-d torch tensors."""

    DIMS = 1

    def pluseq(self, x: Any, delta: Any) -> Any:
        step = _as_delta(delta)[0]
        if isinstance(x, torch.Tensor):
            return x + step
        return float(x + float(step))

    def to_string(self, x: Any) -> str:
        return f"{float(x):g}"

    def cast(self, x: Any, dtype: Any) -> Any:
        if isinstance(dtype, torch.dtype):
            return torch.tensor(float(x), dtype=dtype)
        return dtype(x)

    def copy(self, x: Any) -> Any:
        return x

    def assign(self, dst: Any, src: Any) -> Any:
        return src


class ArrayTrait(ParamsTrait):
    """NumPy arrays of any shape; the tangent space is the flattened array."""

    def dims(self, x: Any) -> int:
        return int(np.size(x))

    def pluseq(self, x: Any, delta: Any) -> Any:
        step = _as_delta(delta)
        if isinstance(x, np.ndarray):
            x += step.reshape(x.shape)
            return x
        return x + step.reshape(x.shape)

    def to_string(self, x: Any) -> str:
        return np.array2string(np.asarray(x))

    def cast(self, x: Any, dtype: Any) -> Any:
        if isinstance(dtype, torch.dtype):
            return torch.tensor(np.asarray(x), dtype=dtype)
        return np.asarray(x).astype(dtype)

    def copy(self, x: Any) -> Any:
        return x.copy()

    def assign(self, dst: Any, src: Any) -> Any:
        np.copyto(dst, src)
        return dst


class TensorTrait(ArrayTrait):
    """Torch tensors, updated out of place so that autograd can track them."""

    def dims(self, x: Any) -> int:
        return int(x.numel())

    def pluseq(self, x: Any, delta: Any) -> Any:
        step = delta.reshape(x.shape) if isinstance(delta, torch.Tensor) else torch.as_tensor(
            np.asarray(delta, dtype=float).reshape(x.shape), dtype=x.dtype
        )
        return x + step

    def to_string(self, x: Any) -> str:
        return str(x.detach().cpu().numpy())

    def cast(self, x: Any, dtype: Any) -> Any:
        return x.detach().clone().to(dtype=dtype)

    def copy(self, x: Any) -> Any:
        return x.detach().clone()

    def assign(self, dst: Any, src: Any) -> Any:
        with torch.no_grad():
            dst.copy_(src)
        return dst


class SequenceTrait(ParamsTrait):
    """Lists of real numbers, updated element-wise in place."""

    def dims(self, x: Any) -> int:
        return len(x)

    def pluseq(self, x: Any, delta: Any) -> Any:
        step = _as_delta(delta)
        for i in range(len(x)):
            x[i] = x[i] + step[i]
        return x

    def cast(self, x: Any, dtype: Any) -> Any:
        if isinstance(dtype, torch.dtype):
            return torch.tensor(list(x), dtype=dtype)
        return [dtype(v) for v in x]

    def copy(self, x: Any) -> Any:
        return list(x)

    def assign(self, dst: Any, src: Any) -> Any:
        dst[:] = src
        return dst


class ObjectTrait(ParamsTrait):
    """User-defined parameters following a duck-typed protocol.

    The parameter class declares ``DIMS`` (or a ``dims()`` method), implements
    ``pluseq(delta)`` or ``__iadd__``, and optionally ``cast(dtype)``.
    """

    def __init__(self, cls: Type) -> None:
        self.DIMS = getattr(cls, "DIMS", DYNAMIC)

    def dims(self, x: Any) -> int:
        if hasattr(x, "dims"):
            return int(x.dims())
        return super().dims(x)

    def pluseq(self, x: Any, delta: Any) -> Any:
        if hasattr(x, "pluseq"):
            result = x.pluseq(delta)
            return x if result is None else result
        x += delta
        return x

    def cast(self, x: Any, dtype: Any) -> Any:
        if not hasattr(x, "cast"):
            raise NotImplementedError(f"{type(x).__name__} does not implement cast()")
        return x.cast(dtype)


_registry: Dict[Type, ParamsTrait] = {}


def register_params_trait(cls: Type, trait: ParamsTrait) -> None:
    """Use ``trait`` for instances of ``cls`` and of its subclasses."""
    _registry[cls] = trait


def _is_protocol_object(x: Any) -> bool:
    has_dims = hasattr(type(x), "DIMS") or hasattr(x, "dims")
    return has_dims and (hasattr(x, "pluseq") or hasattr(x, "__iadd__"))


def get_params_trait(x: Any) -> ParamsTrait:
    """Return the trait describing ``x``.

    Raises:
        TypeError: If no trait is registered or built in for ``type(x)``.
    """
    for cls in type(x).__mro__:
        if cls in _registry:
            return _registry[cls]
    if isinstance(x, torch.Tensor):
        return TensorTrait() if x.dim() > 0 else ScalarTrait()
    if isinstance(x, np.ndarray):
        return ArrayTrait()
    if isinstance(x, numbers.Real):
        return ScalarTrait()
    if isinstance(x, list):
        return SequenceTrait()
    if _is_protocol_object(x):
        return ObjectTrait(type(x))
    raise TypeError(f"No parameter trait known for type {type(x).__name__}")


def params_trait(cls: Type) -> Callable[[Type[ParamsTrait]], Type[ParamsTrait]]:
    """Class decorator registering a trait for ``cls``.

    Example
    -------
    >>> @params_trait(complex)
    ... class ComplexTrait(ParamsTrait):
    ...     DIMS = 2
    ...     def pluseq(self, x, delta):
    ...         return x + complex(delta[0], delta[1])
    """

    def decorator(trait_cls: Type[ParamsTrait]) -> Type[ParamsTrait]:
        register_params_trait(cls, trait_cls())
        return trait_cls

    return decorator


def resolve_trait(x: Any, trait: Optional[ParamsTrait] = None) -> ParamsTrait:
    return trait if trait is not None else get_params_trait(x)


__all__ = [
    "ArrayTrait",
    "DYNAMIC",
    "ObjectTrait",
    "ParamsTrait",
    "ScalarTrait",
    "SequenceTrait",
    "TensorTrait",
    "get_params_trait",
    "params_trait",
    "register_params_trait",
    "resolve_trait",
]
