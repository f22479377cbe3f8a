"""
Token Sampling Policies

A policy picks one token index from the logits of the last decoded position.

GreedySampler is the default and ignores temperature/top_p entirely, so
generation with it is deterministic. TopPSampler is the opt-in probabilistic
policy for callers that want temperature and nucleus filtering to take effect.
"""

from __future__ import annotations

from typing import Optional, Protocol

import numpy as np
import torch
import torch.nn.functional as F

from edgeinfer.errors import InvalidArgumentError


class SamplingPolicy(Protocol):
    """Selects the next token from a logits vector."""

    def select(self, logits: np.ndarray, temperature: float, top_p: float) -> int: ...


def _check_logits(logits: np.ndarray) -> None:
    if logits is None or len(logits) == 0:
        raise InvalidArgumentError("Cannot sample from an empty logits vector")


class GreedySampler:
    """Arg-max selection. Ties go to the lowest token index."""

    name = "greedy"

    def select(self, logits: np.ndarray, temperature: float = 0.0, top_p: float = 1.0) -> int:
        _check_logits(logits)
        return int(np.argmax(logits))


class TopPSampler:
    """
    Temperature + top-k + nucleus sampling.

    Args:
        top_k: Keep only the k highest logits before nucleus filtering (0 = off)
        seed: Seed for the sampler's private generator, for reproducible runs
    """

    name = "top-p"

    def __init__(self, top_k: int = 0, seed: Optional[int] = None):
        if top_k < 0:
            raise InvalidArgumentError(f"top_k must be >= 0, got {top_k}")
        self.top_k = top_k
        self._generator = torch.Generator()
        if seed is not None:
            self._generator.manual_seed(seed)
        else:
            self._generator.seed()

    def select(self, logits: np.ndarray, temperature: float, top_p: float) -> int:
        _check_logits(logits)
        if temperature == 0:
            return int(np.argmax(logits))

        scores = torch.from_numpy(np.asarray(logits, dtype=np.float32).copy())
        scores = scores / temperature

        # Top-k filtering
        if 0 < self.top_k < scores.shape[-1]:
            kth_value = torch.topk(scores, self.top_k)[0][-1]
            scores[scores < kth_value] = float("-inf")

        # Top-p (nucleus) filtering
        if top_p < 1.0:
            sorted_scores, sorted_indices = torch.sort(scores, descending=True)
            cumulative_probs = torch.cumsum(F.softmax(sorted_scores, dim=-1), dim=-1)

            # Shift right so the token that crosses top_p is kept
            sorted_to_remove = cumulative_probs > top_p
            sorted_to_remove[1:] = sorted_to_remove[:-1].clone()
            sorted_to_remove[0] = False

            to_remove = sorted_to_remove.scatter(0, sorted_indices, sorted_to_remove)
            scores[to_remove] = float("-inf")

        probs = F.softmax(scores, dim=-1)
        return int(torch.multinomial(probs, num_samples=1, generator=self._generator).item())


SAMPLERS = {
    GreedySampler.name: GreedySampler,
    TopPSampler.name: TopPSampler,
}


def get_sampler(name: str = "greedy", seed: Optional[int] = None) -> SamplingPolicy:
    """Build a sampling policy by name ("greedy" or "top-p")."""
    if name == GreedySampler.name:
        return GreedySampler()
    if name == TopPSampler.name:
        return TopPSampler(seed=seed)
    raise InvalidArgumentError(
        f"Unknown sampler: {name} (available: {', '.join(SAMPLERS)})"
    )
