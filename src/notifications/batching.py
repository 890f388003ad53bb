from __future__ import annotations

from collections.abc import Sequence

DEFAULT_CHUNK_SIZE = 500


def partition(user_ids: Sequence[str], chunk_size: int = DEFAULT_CHUNK_SIZE) -> list[list[str]]:
    if chunk_size < 1:
        raise ValueError("chunk_size must be at least 1")
    ids = list(user_ids)
    return [ids[start : start + chunk_size] for start in range(0, len(ids), chunk_size)]


def unique_in_order(user_ids: Sequence[str]) -> list[str]:
    return [user_id for user_id in dict.fromkeys(user_ids) if user_id]
