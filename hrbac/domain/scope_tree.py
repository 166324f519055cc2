from __future__ import annotations

from collections.abc import Iterable, Set
from typing import Protocol

from hrbac.domain.errors import CycleOrOrphanError, NotFoundError

_UNSEEN = 0
_ON_PATH = 1
_DONE = 2


class ScopeLike(Protocol):
    id: str
    parent_id: str | None


class ScopeTree:
    """Parent-indexed scope hierarchy held as flat arrays.

    Nodes live in ``_ids``/``_parents``/``_children`` and are addressed by
    their arena index; ``_index`` maps scope ids to indexes. Acyclicity is
    checked once by ``build_tree`` so queries never need a step guard.
    """

    def __init__(
        self,
        ids: list[str],
        parents: list[int | None],
        children: list[list[int]],
        depths: list[int],
    ) -> None:
        self._ids = ids
        self._parents = parents
        self._children = children
        self._depths = depths
        self._index = {scope_id: idx for idx, scope_id in enumerate(ids)}

    def __len__(self) -> int:
        return len(self._ids)

    def __contains__(self, scope_id: object) -> bool:
        return scope_id in self._index

    def _require(self, scope_id: str) -> int:
        idx = self._index.get(scope_id)
        if idx is None:
            raise NotFoundError("scope")
        return idx

    def roots(self) -> list[str]:
        return [self._ids[idx] for idx, parent in enumerate(self._parents) if parent is None]

    def parent_of(self, scope_id: str) -> str | None:
        parent = self._parents[self._require(scope_id)]
        return None if parent is None else self._ids[parent]

    def children_of(self, scope_id: str) -> list[str]:
        return [self._ids[child] for child in self._children[self._require(scope_id)]]

    def depth_of(self, scope_id: str) -> int:
        return self._depths[self._require(scope_id)]

    def ancestors_of(self, scope_id: str) -> list[str]:
        chain: list[str] = []
        idx: int | None = self._require(scope_id)
        while idx is not None:
            chain.append(self._ids[idx])
            idx = self._parents[idx]
        chain.reverse()
        return chain

    def is_ancestor_or_self(self, candidate_id: str, target_id: str) -> bool:
        if target_id not in self._index or candidate_id not in self._index:
            return False
        return self.distance(candidate_id, target_id) is not None

    def distance(self, ancestor_id: str, scope_id: str) -> int | None:
        ancestor = self._require(ancestor_id)
        idx: int | None = self._require(scope_id)
        steps = 0
        while idx is not None:
            if idx == ancestor:
                return steps
            if self._depths[idx] <= self._depths[ancestor]:
                return None
            idx = self._parents[idx]
            steps += 1
        return None

    def closest_granted(self, target_id: str, granted_ids: Set[str]) -> str | None:
        # Walks upward from the target, so the first hit is the nearest grant.
        idx = self._index.get(target_id)
        while idx is not None:
            scope_id = self._ids[idx]
            if scope_id in granted_ids:
                return scope_id
            idx = self._parents[idx]
        return None

    def descendants_of(self, scope_id: str) -> set[str]:
        found: set[str] = set()
        stack = list(self._children[self._require(scope_id)])
        while stack:
            idx = stack.pop()
            found.add(self._ids[idx])
            stack.extend(self._children[idx])
        return found

    def subtree_post_order(self, scope_id: str) -> list[str]:
        """Scope ids of the subtree with every child listed before its parent."""
        ordered = sorted(
            self.descendants_of(scope_id) | {scope_id},
            key=lambda item: self._depths[self._index[item]],
            reverse=True,
        )
        return ordered


def build_tree(scopes: Iterable[ScopeLike]) -> ScopeTree:
    ids: list[str] = []
    raw_parents: list[str | None] = []
    index: dict[str, int] = {}
    for scope in scopes:
        if scope.id in index:
            raise CycleOrOrphanError(scope.id, "duplicate scope id")
        index[scope.id] = len(ids)
        ids.append(scope.id)
        raw_parents.append(scope.parent_id)

    parents: list[int | None] = []
    children: list[list[int]] = [[] for _ in ids]
    for idx, parent_id in enumerate(raw_parents):
        if parent_id is None:
            parents.append(None)
            continue
        parent_idx = index.get(parent_id)
        if parent_idx is None:
            raise CycleOrOrphanError(ids[idx], f"parent {parent_id} not found")
        if parent_idx == idx:
            raise CycleOrOrphanError(ids[idx], "scope is its own parent")
        parents.append(parent_idx)
        children[parent_idx].append(idx)

    depths = [-1] * len(ids)
    state = [_UNSEEN] * len(ids)
    for start in range(len(ids)):
        if state[start] == _DONE:
            continue
        path: list[int] = []
        idx: int | None = start
        while idx is not None and state[idx] != _DONE:
            if state[idx] == _ON_PATH:
                raise CycleOrOrphanError(ids[idx], "cycle in parent chain")
            state[idx] = _ON_PATH
            path.append(idx)
            idx = parents[idx]
        depth = -1 if idx is None else depths[idx]
        for node in reversed(path):
            depth += 1
            depths[node] = depth
            state[node] = _DONE

    return ScopeTree(ids, parents, children, depths)
