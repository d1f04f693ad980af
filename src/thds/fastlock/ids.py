import random
import typing as ty
from uuid import uuid4

from thds import humenc

from . import _funcs


def contender_id(now_ms: ty.Optional[int] = None) -> str:
    """Creation time plus 128 random bits. Unique only probabilistically, but with a
    vanishingly small chance of collision.
    """
    created = _funcs.now_ms() if now_ms is None else now_ms
    return f"{created}:{humenc.encode(uuid4().bytes)}"


def jitter_s(max_jitter_s: float, rng: ty.Optional[random.Random] = None) -> float:
    """Uniform in [0, max_jitter_s)."""
    return (rng or random).random() * max_jitter_s
