"""
FanOutRouter — run one coroutine function against many independent
branches concurrently, isolating each branch's failure.

A failing branch is logged and left out of the result list; it never
prevents the other branches from returning.  Results come back in no
particular order, so callers that need one (most-recent-first, say) sort
the merged list themselves; ``merge_results`` does this.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Hashable, Iterable, List, Optional, Sequence

from connectors.exceptions import AllBranchesFailed
from utils.schemas import Branch, BranchResult

logger = logging.getLogger(__name__)

BranchFn = Callable[[Any], Awaitable[Any]]


class FanOutRouter:
    def __init__(self, name: str = "fanout"):
        self.name = name

    async def query_all(
        self,
        branches: Sequence[Branch],
        fn: BranchFn,
        target: Optional[str] = None,
        *,
        strict: bool = False,
    ) -> List[BranchResult]:
        """
        Run ``fn(branch.target)`` for every branch, or only for the branch
        labelled ``target``.

        With ``target`` set this is a single interactive call: an unknown
        label yields ``[]`` and the branch's own error propagates to the
        caller.  Without it, every branch runs concurrently and failing
        branches are dropped.  A cancelled branch counts as failed.

        Raises
        ------
        AllBranchesFailed – ``strict`` is set, there was at least one branch,
                            and none of them succeeded
        """
        if target is not None:
            branch = next((b for b in branches if b.label == target), None)
            if branch is None:
                logger.info("[%s] No branch named %r", self.name, target)
                return []
            result = await fn(branch.target)
            return [BranchResult(label=branch.label, result=result, meta=branch.meta)]

        if not branches:
            return []

        outcomes = await asyncio.gather(
            *[fn(b.target) for b in branches],
            return_exceptions=True,
        )

        results: List[BranchResult] = []
        errors: Dict[str, BaseException] = {}
        for branch, outcome in zip(branches, outcomes):
            if isinstance(outcome, BaseException):
                logger.warning(
                    "[%s] Branch %r failed: %r", self.name, branch.label, outcome
                )
                errors[branch.label] = outcome
                continue
            results.append(BranchResult(label=branch.label, result=outcome, meta=branch.meta))

        logger.debug(
            "[%s] %d/%d branches succeeded", self.name, len(results), len(branches)
        )
        if strict and not results:
            raise AllBranchesFailed(errors)
        return results


def merge_results(
    results: Iterable[BranchResult],
    extract: Callable[[Any], Iterable[Dict[str, Any]]] = lambda r: r,
    *,
    dedupe_key: Optional[Callable[[Dict[str, Any]], Hashable]] = None,
    sort_key: Optional[Callable[[Dict[str, Any]], Any]] = None,
    reverse: bool = True,
) -> List[Dict[str, Any]]:
    """
    Flatten per-branch item lists into one list with provenance.

    Every item gains a ``branch`` field plus the branch's ``meta`` entries.
    The first occurrence of each ``dedupe_key`` wins.  ``sort_key`` with
    the default ``reverse=True`` gives newest-first for timestamp keys.
    """
    merged: List[Dict[str, Any]] = []
    seen = set()
    for br in results:
        for item in extract(br.result) or []:
            tagged = {**item, "branch": br.label, **br.meta}
            if dedupe_key is not None:
                natural = dedupe_key(tagged)
                if natural in seen:
                    continue
                seen.add(natural)
            merged.append(tagged)

    if sort_key is not None:
        merged.sort(key=sort_key, reverse=reverse)
    return merged
