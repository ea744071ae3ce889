"""Rebuild task hierarchies from parent references and navigate them by id."""

import logging
from collections.abc import Iterable

from tasksync.exceptions import MalformedHierarchy, TaskNotFoundError
from tasksync.models.tasks import Task

logger = logging.getLogger(__name__)

DEFAULT_MAX_DEPTH = 64


def _position_key(task: Task) -> tuple[str, str]:
    # Position keys are opaque strings, compared lexicographically. The id
    # breaks ties so equal or missing positions still sort deterministically.
    return (task.position, task.id)


def build_forest(
    tasks: Iterable[Task],
    max_depth: int = DEFAULT_MAX_DEPTH,
    promote_unreachable: bool = False,
) -> list[Task]:
    """Arrange a flat collection of tasks into sorted trees.

    Tasks whose parent is unknown are attached at the root level. Tasks that
    cannot be reached from any root (a parent cycle) raise MalformedHierarchy,
    or are attached at the root level when ``promote_unreachable`` is set.
    The input tasks are not modified.
    """
    arena: dict[str, Task] = {}
    for task in tasks:
        if task.id in arena:
            logger.warning("Duplicate task id %s ignored", task.id)
            continue
        arena[task.id] = task

    children: dict[str, list[Task]] = {}
    roots: list[Task] = []
    for task in arena.values():
        if not task.parent:
            roots.append(task)
        elif task.parent not in arena:
            logger.warning("Task %s has unknown parent %s, attaching at root", task.id, task.parent)
            roots.append(task)
        else:
            children.setdefault(task.parent, []).append(task)
    for siblings in children.values():
        siblings.sort(key=_position_key)
    roots.sort(key=_position_key)

    placed: set[str] = set()

    def attach(task: Task, depth: int) -> Task:
        if depth > max_depth:
            raise MalformedHierarchy(
                f"Task {task.id} is nested deeper than {max_depth} levels", [task.id]
            )
        placed.add(task.id)
        kids = [
            attach(child, depth + 1)
            for child in children.get(task.id, [])
            if child.id not in placed
        ]
        return task.model_copy(update={"tasks": kids})

    forest = [attach(root, 0) for root in roots]

    unreachable = sorted(
        (t for t in arena.values() if t.id not in placed), key=_position_key
    )
    if unreachable:
        ids = [t.id for t in unreachable]
        if not promote_unreachable:
            raise MalformedHierarchy(f"Parent cycle among tasks {', '.join(ids)}", ids)
        logger.warning("Promoting tasks caught in a parent cycle to root: %s", ", ".join(ids))
        for task in unreachable:
            if task.id not in placed:
                forest.append(attach(task, 0))
    return forest


def flatten(forest: Iterable[Task]) -> list[Task]:
    """Pre-order list of every task in ``forest`` with children stripped."""
    flat: list[Task] = []
    stack = list(reversed(list(forest)))
    while stack:
        task = stack.pop()
        flat.append(task.model_copy(update={"tasks": []}))
        stack.extend(reversed(task.tasks))
    return flat


class TaskTree:
    """Arena of tasks keyed by id with an explicit ordered child index.

    Lists are the roots. Every other node records its owner in ``_owner``,
    which is the list id for top-level tasks and the parent task id otherwise.
    """

    def __init__(self):
        self._nodes: dict[str, Task] = {}
        self._children: dict[str, list[str]] = {}
        self._owner: dict[str, str] = {}
        self._roots: list[str] = []

    @classmethod
    def from_forest(cls, forest: Iterable[Task]) -> "TaskTree":
        tree = cls()
        for root in forest:
            tree._add_subtree(root, owner=None)
        return tree

    def _add_subtree(self, task: Task, owner: str | None) -> None:
        self._nodes[task.id] = task.model_copy(update={"tasks": []})
        self._children[task.id] = []
        if owner is None:
            self._roots.append(task.id)
        else:
            self._owner[task.id] = owner
            self._children[owner].append(task.id)
        for child in task.tasks:
            self._add_subtree(child, owner=task.id)

    def __contains__(self, task_id: str) -> bool:
        return task_id in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def get(self, task_id: str) -> Task:
        try:
            return self._nodes[task_id]
        except KeyError:
            raise TaskNotFoundError(task_id) from None

    def children(self, task_id: str) -> list[Task]:
        self.get(task_id)
        return [self._nodes[cid] for cid in self._children[task_id]]

    def roots(self) -> list[Task]:
        return [self._nodes[rid] for rid in self._roots]

    def list_id_of(self, task_id: str) -> str:
        """Id of the list that ultimately owns ``task_id``."""
        self.get(task_id)
        current = task_id
        for _ in range(len(self._nodes) + 1):
            owner = self._owner.get(current)
            if owner is None:
                return current
            current = owner
        raise MalformedHierarchy(f"Ownership loop above task {task_id}", [task_id])

    def insert(self, task: Task, owner_id: str) -> None:
        """Add ``task`` as the last child of ``owner_id``."""
        if task.id in self._nodes:
            raise ValueError(f"Task {task.id} already exists")
        self.get(owner_id)
        self._add_subtree(task, owner=owner_id)

    def replace(self, task: Task) -> None:
        """Swap the stored fields of an existing node, keeping its children."""
        self.get(task.id)
        self._nodes[task.id] = task.model_copy(update={"tasks": []})

    def remove(self, task_id: str) -> list[str]:
        """Remove a node and its whole subtree, returning the removed ids."""
        self.get(task_id)
        owner = self._owner.pop(task_id, None)
        if owner is None:
            self._roots.remove(task_id)
        else:
            self._children[owner].remove(task_id)
        removed: list[str] = []
        stack = [task_id]
        while stack:
            current = stack.pop()
            removed.append(current)
            stack.extend(self._children.pop(current, []))
            self._nodes.pop(current, None)
            if current != task_id:
                self._owner.pop(current, None)
        return removed

    def subtree(self, task_id: str) -> Task:
        node = self.get(task_id)
        return node.model_copy(
            update={"tasks": [self.subtree(cid) for cid in self._children[task_id]]}
        )

    def to_forest(self) -> list[Task]:
        return [self.subtree(rid) for rid in self._roots]
