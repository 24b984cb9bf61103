"""Immutable segment trie mapping (method, path) to handlers.

Path patterns are split on "/". Each segment is one of:

    users        literal
    :id  {id}    single segment parameter
    *rest        catch-all, must be the last segment
    {rest...}

Inspired by go 1.22+ net/http's routingNode and julienschmidt/httprouter.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from functools import lru_cache
from typing import Never


class LeafKey(Enum):
    """Valid keys for leaf nodes: HTTP methods.

    Methods from the following RFCs are all observed:

        * RFC 9110: HTTP Semantics, obsoletes 7231, which obsoleted 2616
        * RFC 5789: PATCH Method for HTTP

    ANY_HTTP represents any http method
    """

    CONNECT = "CONNECT"
    DELETE = "DELETE"
    GET = "GET"
    HEAD = "HEAD"
    OPTIONS = "OPTIONS"
    PATCH = "PATCH"
    POST = "POST"
    PUT = "PUT"
    TRACE = "TRACE"

    ANY_HTTP = "ANY_HTTP"

    def __repr__(self) -> str:
        return str(self.value)


class FrozenDict[K, V](dict[K, V]):
    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._hash: int | None = None

    def __hash__(self) -> int:
        if self._hash is None:
            self._hash = hash(frozenset(self.items()))
        return self._hash

    def _immutable(self, *args, **kwargs) -> Never:
        msg = "FrozenDict is immutable"
        raise TypeError(msg)

    __setitem__ = __delitem__ = clear = pop = popitem = setdefault = update = _immutable


@dataclass(slots=True, frozen=True)
class Node[T]:
    """Segment-based trie node"""

    handler: T | None = field(default=None)
    children: FrozenDict[str | LeafKey, Node[T]] = field(default_factory=FrozenDict)
    wildcard: WildCardNode[T] | None = field(default=None)
    catchall: CatchAllNode[T] | None = field(default=None)


@dataclass(slots=True, frozen=True)
class WildCardNode[T]:
    name: str
    child: Node[T]


@dataclass(slots=True, frozen=True)
class CatchAllNode[T]:
    name: str
    child: Node[T]


@dataclass(slots=True, frozen=True)
class Match[T]:
    """Result of a lookup.

    `handler` is None when nothing matched. `method_not_allowed` is set when
    the path exists but has no handler for the requested method.
    """

    handler: T | None
    params: FrozenDict[str, str]
    route: str
    method_not_allowed: bool = False


_NO_PARAMS: FrozenDict[str, str] = FrozenDict()


@lru_cache(maxsize=1024)
def find_handler[T](path: str, method: LeafKey, tree: Node[T]) -> Match[T]:
    """Traverses the tree to find the best match handler.

    Each path segment priority is: exact match > wildcard match > catchall match
    """
    segments = path[1:].split("/")  # assumes leading "/"

    current = tree
    params: dict[str, str] = {}
    route_parts: list[str] = []
    for i, seg in enumerate(segments):
        child = current.children.get(seg)
        if child is not None:  # exact match
            route_parts.append(seg)
            current = child
            continue
        if current.wildcard is not None:
            params[current.wildcard.name] = seg
            route_parts.append(":" + current.wildcard.name)
            current = current.wildcard.child
            continue
        if current.catchall is not None:
            params[current.catchall.name] = "/".join(segments[i:])
            route_parts.append("*" + current.catchall.name)
            current = current.catchall.child
            break
        return Match(None, _NO_PARAMS, "")

    leaf = current.children.get(method)
    if leaf is None:
        leaf = current.children.get(LeafKey.ANY_HTTP)
    if leaf is None or leaf.handler is None:
        has_methods = any(isinstance(k, LeafKey) for k in current.children)
        return Match(None, _NO_PARAMS, "", method_not_allowed=has_methods)

    return Match(leaf.handler, FrozenDict(params), "/" + "/".join(route_parts))


def add_route[T](tree: Node[T], method: LeafKey, path: str, handler: T) -> Node[T]:
    """add route to tree for handler on method/path"""
    leaf = Node(handler=handler)
    new_tree = _construct_sub_tree(path, Node(children=FrozenDict({method: leaf})))
    return _merge_trees(tree, new_tree, path)


def _parse_segment(seg: str) -> tuple[str, str]:
    """Classify a pattern segment as ("literal" | "param" | "catchall", name)."""
    if seg.startswith("{") and seg.endswith("...}"):
        return "catchall", seg[1:-4]
    if seg.startswith("{") and seg.endswith("}"):
        return "param", seg[1:-1]
    if seg.startswith("*"):
        return "catchall", seg[1:]
    if seg.startswith(":"):
        return "param", seg[1:]
    return "literal", seg


def _construct_sub_tree[T](path: str, child: Node[T]) -> Node[T]:
    """construct sub tree for existing node on path"""
    if not path.startswith("/"):
        msg = f"path must start with '/', provided {path=}"
        raise ValueError(msg)
    segments = path[1:].split("/")

    for i, seg in reversed(list(enumerate(segments))):
        kind, name = _parse_segment(seg)
        if kind != "literal" and not name:
            msg = f"parameters must be named, provided {path=}"
            raise ValueError(msg)
        if kind == "catchall":
            if i != len(segments) - 1:
                msg = f"catch-all routes are only allowed at the end of the path, provided {path=}"
                raise ValueError(msg)
            child = Node(catchall=CatchAllNode(name=name, child=child))
        elif kind == "param":
            child = Node(wildcard=WildCardNode(name=name, child=child))
        else:
            child = Node(children=FrozenDict({seg: child}))

    return child


def _merge_trees[T](tree1: Node[T], tree2: Node[T], path: str) -> Node[T]:
    """merge tree1 and tree2, error on conflict"""
    if (
        tree1.handler is not None
        and tree2.handler is not None
        and tree1.handler is not tree2.handler
    ):
        msg = f"a handler is already registered for {path=}"
        raise ValueError(msg)
    handler = tree1.handler or tree2.handler

    if tree1.wildcard is not None and tree2.wildcard is not None:
        if tree1.wildcard.name != tree2.wildcard.name:
            msg = (
                f"parameter ':{tree2.wildcard.name}' conflicts with existing "
                f"parameter ':{tree1.wildcard.name}', provided {path=}"
            )
            raise ValueError(msg)
        wildcard: WildCardNode[T] | None = WildCardNode(
            name=tree1.wildcard.name,
            child=_merge_trees(tree1.wildcard.child, tree2.wildcard.child, path),
        )
    else:
        wildcard = tree1.wildcard or tree2.wildcard

    if tree1.catchall is not None and tree2.catchall is not None:
        if tree1.catchall.name != tree2.catchall.name:
            msg = (
                f"catch-all '*{tree2.catchall.name}' conflicts with existing "
                f"catch-all '*{tree1.catchall.name}', provided {path=}"
            )
            raise ValueError(msg)
        catchall: CatchAllNode[T] | None = CatchAllNode(
            name=tree1.catchall.name,
            child=_merge_trees(tree1.catchall.child, tree2.catchall.child, path),
        )
    else:
        catchall = tree1.catchall or tree2.catchall

    tree1_keys = set(tree1.children.keys())
    tree2_keys = set(tree2.children.keys())
    common_keys = tree1_keys & tree2_keys
    children: FrozenDict[str | LeafKey, Node[T]] = FrozenDict(
        {k: tree1.children[k] for k in tree1_keys - tree2_keys}
        | {k: tree2.children[k] for k in tree2_keys - tree1_keys}
        | {
            k: _merge_trees(tree1.children[k], tree2.children[k], path)
            for k in common_keys
        }
    )

    return Node(
        handler=handler,
        children=children,
        wildcard=wildcard,
        catchall=catchall,
    )
