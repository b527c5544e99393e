"""Proof-of-Work gate.

The client must find an integer ``n`` such that
``sha256(token + str(n))`` starts with ``difficulty_bytes`` zero bytes.
With the default of two bytes this costs ~65536 hashes on average. It is a
cost multiplier for high-volume automation, not a proof of humanity.
"""
from __future__ import annotations

import hashlib
from typing import Any, Optional, Union

DEFAULT_DIFFICULTY_BYTES = 2
DEFAULT_MAX_ATTEMPTS = 5_000_000


def pow_digest(token: str, solution: Union[int, str]) -> bytes:
    """Return the digest checked by the gate for a token/solution pair."""
    return hashlib.sha256(f"{token}{solution}".encode("utf-8")).digest()


def meets_difficulty(digest: bytes, difficulty_bytes: int = DEFAULT_DIFFICULTY_BYTES) -> bool:
    return all(b == 0 for b in digest[:difficulty_bytes])


def solve(
    token: str,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    difficulty_bytes: int = DEFAULT_DIFFICULTY_BYTES,
) -> Optional[int]:
    """Brute-force a solution for token.

    Args:
        token: The challenge token the solution is bound to.
        max_attempts: Upper bound on the search.
        difficulty_bytes: Number of leading zero bytes required.

    Returns:
        The first valid integer, or None if the bound was exhausted.
    """
    for n in range(max_attempts):
        if meets_difficulty(pow_digest(token, n), difficulty_bytes):
            return n
    return None


def parse_solution(solution: Any) -> Optional[str]:
    """
    Return the text hashed after the token, or None if solution is not a
    non-negative integer. Decimal strings are hashed exactly as sent.
    """
    if isinstance(solution, bool):
        return None
    if isinstance(solution, int):
        return str(solution) if solution >= 0 else None
    if isinstance(solution, str) and solution.isascii() and solution.isdigit():
        return solution
    return None


def verify_solution(
    token: str,
    solution: Any,
    difficulty_bytes: int = DEFAULT_DIFFICULTY_BYTES,
) -> bool:
    """Recompute the digest for token/solution and check the difficulty."""
    text = parse_solution(solution)
    if text is None or not token:
        return False
    return meets_difficulty(pow_digest(token, text), difficulty_bytes)
