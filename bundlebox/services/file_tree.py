"""Staged edits over an archive's file/folder structure.

The management view shows an archive's subfiles as a tree.  Users stage new
uploads (``to-add``) and deletions (``to-delete``) against it, undo them, and
finally commit; :func:`flatten` turns the tree back into the add/delete lists
the assembler understands.

Every function here is pure: trees are tuples of frozen nodes and each
operation returns a new tree, leaving its input untouched.
"""
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Iterable, Union


class NodeStatus(str, Enum):
    EXISTING = "existing"
    TO_ADD = "to-add"
    TO_DELETE = "to-delete"


@dataclass(frozen=True)
class FileNode:
    name: str
    path: str
    status: NodeStatus
    file_token: str | None = None
    payload: Any = None
    # the existing file a staged upload is about to overwrite
    replaced: "FileNode | None" = None

    is_folder = False


@dataclass(frozen=True)
class FolderNode:
    name: str
    path: str
    status: NodeStatus = NodeStatus.EXISTING
    children: tuple = field(default_factory=tuple)

    is_folder = True


Node = Union[FileNode, FolderNode]
Tree = tuple


@dataclass(frozen=True)
class TreeEntry:
    path: str
    payload: Any = None
    file_token: str | None = None


@dataclass
class FlatChanges:
    to_add: list = field(default_factory=list)
    to_delete: list = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return not self.to_add and not self.to_delete


def split_path(path: str) -> list[str]:
    parts = [part for part in path.strip("/").split("/") if part]
    if not parts:
        raise ValueError(f"empty path: {path!r}")
    return parts


def _entry_parts(entry) -> tuple[str, Any, str | None]:
    if isinstance(entry, TreeEntry):
        return entry.path, entry.payload, entry.file_token
    return entry.path, entry, getattr(entry, "file_token", None)


def build_tree(entries: Iterable, status: NodeStatus) -> Tree:
    """Build a tree from entries carrying slash-delimited ``path`` values.

    Leaves take ``status``; folders synthesized to hold them are ``existing``.
    ``TreeEntry`` objects contribute their ``payload``; any other object
    (an ORM subfile row, say) becomes the payload itself.
    """
    status = NodeStatus(status)
    tree: Tree = ()
    for entry in entries:
        path, payload, file_token = _entry_parts(entry)
        tree = merge_trees(tree, _chain(split_path(path), status, payload, file_token))
    return tree


def _chain(parts: list[str], status: NodeStatus, payload, file_token) -> Tree:
    path = "/".join(parts)
    node: Node = FileNode(
        name=parts[-1], path=path, status=status, file_token=file_token, payload=payload
    )
    for depth in range(len(parts) - 1, 0, -1):
        node = FolderNode(name=parts[depth - 1], path="/".join(parts[:depth]), children=(node,))
    return (node,)


def merge_trees(base: Tree, incoming: Tree) -> Tree:
    """Union two trees by path; incoming wins whenever a file is involved."""
    merged = list(base)
    index = {node.path: i for i, node in enumerate(merged)}
    for node in incoming:
        i = index.get(node.path)
        if i is None:
            index[node.path] = len(merged)
            merged.append(node)
            continue
        current = merged[i]
        if current.is_folder and node.is_folder:
            merged[i] = replace(current, children=merge_trees(current.children, node.children))
        elif not current.is_folder and not node.is_folder and node.status == NodeStatus.TO_ADD:
            previous = current.replaced if current.status == NodeStatus.TO_ADD else current
            merged[i] = replace(node, replaced=previous)
        else:
            merged[i] = node
    return tuple(merged)


def find_node(tree: Tree, path: str) -> Node:
    target = "/".join(split_path(path))
    nodes = tree
    while True:
        for node in nodes:
            if node.path == target:
                return node
            if node.is_folder and target.startswith(node.path + "/"):
                nodes = node.children
                break
        else:
            raise KeyError(path)


def _update(tree: Tree, path: str, updater) -> Tree:
    """Replace the node at ``path`` with ``updater(node)``; ``None`` drops it.

    Folders left without children by a drop are pruned as well.
    """
    target = "/".join(split_path(path))
    out = []
    found = False
    for node in tree:
        if node.path == target:
            found = True
            new = updater(node)
            if new is not None:
                out.append(new)
        elif node.is_folder and target.startswith(node.path + "/"):
            found = True
            children = _update(node.children, target, updater)
            if children:
                out.append(replace(node, children=children))
        else:
            out.append(node)
    if not found:
        raise KeyError(path)
    return tuple(out)


def _drop_staged(node: Node) -> Node | None:
    if node.is_folder:
        children = tuple(
            child for child in (_drop_staged(c) for c in node.children) if child is not None
        )
        if not children:
            return None
        return replace(node, children=children)
    if node.status == NodeStatus.TO_ADD:
        return node.replaced
    return node


def _cascade_delete(node: Node) -> Node | None:
    if node.status == NodeStatus.TO_ADD and not node.is_folder:
        return _cascade_delete(node.replaced) if node.replaced is not None else None
    if node.is_folder:
        children = tuple(
            child for child in (_cascade_delete(c) for c in node.children) if child is not None
        )
        if not children:
            return None
        return replace(node, status=NodeStatus.TO_DELETE, children=children)
    return replace(node, status=NodeStatus.TO_DELETE)


def _cascade_undelete(node: Node) -> Node:
    status = NodeStatus.EXISTING if node.status == NodeStatus.TO_DELETE else node.status
    if node.is_folder:
        return replace(
            node, status=status, children=tuple(_cascade_undelete(c) for c in node.children)
        )
    return replace(node, status=status)


def mark_for_delete(tree: Tree, path: str) -> Tree:
    """Stage a deletion.

    A staged (``to-add``) node simply disappears together with its subtree,
    bringing back the existing file it was going to overwrite if any.
    Anything else is flagged ``to-delete`` down to every descendant.
    """

    def updater(node: Node):
        if node.status == NodeStatus.TO_ADD:
            return _drop_staged(node) if node.is_folder else node.replaced
        return _cascade_delete(node)

    return _update(tree, path, updater)


def unmark_delete(tree: Tree, path: str) -> Tree:
    return _update(tree, path, _cascade_undelete)


def remove_staged_node(tree: Tree, path: str) -> Tree:
    """Cancel a pending addition; ``to-delete`` marks are left alone."""

    def updater(node: Node):
        if node.is_folder:
            return _drop_staged(node)
        if node.status != NodeStatus.TO_ADD:
            return node
        return node.replaced

    return _update(tree, path, updater)


def flatten(tree: Tree) -> FlatChanges:
    changes = FlatChanges()

    def visit(nodes):
        for node in nodes:
            if node.is_folder:
                visit(node.children)
            elif node.status == NodeStatus.TO_ADD:
                changes.to_add.append((node.path, node.payload))
            elif node.status == NodeStatus.TO_DELETE and node.file_token:
                changes.to_delete.append(node.file_token)

    visit(tree)
    return changes


def iter_files(tree: Tree):
    for node in tree:
        if node.is_folder:
            yield from iter_files(node.children)
        else:
            yield node


def tree_to_dict(tree: Tree, describe=None) -> list[dict]:
    """JSON-ready listing; ``describe(payload)`` adds per-file fields."""
    out = []
    for node in tree:
        item = {
            "name": node.name,
            "path": node.path,
            "is_folder": node.is_folder,
            "status": node.status.value,
        }
        if node.is_folder:
            item["children"] = tree_to_dict(node.children, describe)
        else:
            item["file_token"] = node.file_token
            if describe is not None and node.payload is not None:
                item.update(describe(node.payload))
        out.append(item)
    return out
