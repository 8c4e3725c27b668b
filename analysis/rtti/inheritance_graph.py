import enum
import logging
import typing
from collections import defaultdict, deque

logger = logging.getLogger(__file__)


class EdgeFlag(enum.IntFlag):
    NONE = 0
    VIRTUAL = 1
    PUBLIC = 2


class Edge(typing.NamedTuple):
    node_id: int
    flags: EdgeFlag


class NodeNotFoundError(LookupError):
    pass


class Node(object):
    """A class, identified by the address of its RTTI record.

    children are the direct base classes, parents the classes directly
    deriving from it. A node first seen as someone's base is a skeleton until
    its own record is parsed.
    """

    def __init__(self, rtti_address: int, name: str = "",
                 children: typing.Sequence[Edge] = (), initialized: bool = False):
        self.id: int = rtti_address
        self.rtti_address: int = rtti_address
        self.name: str = name
        self.children: typing.List[Edge] = list(children)
        self.parents: typing.List[Edge] = []
        self.initialized: bool = initialized

    def is_leaf(self) -> bool:
        return len(self.children) == 0

    def __repr__(self):
        return "<Node %s @%#x children=%d parents=%d%s>" % (
            self.name or "?", self.rtti_address, len(self.children), len(self.parents),
            "" if self.initialized else " skeleton")


class InheritanceGraph(object):
    """Polytree of the classes found through RTTI.

    Nodes live in a dense list, ``__id_map`` maps a node id to its index.
    Records may reference base classes that are parsed later, so children
    are inserted as skeleton nodes and filled in when their record shows up.
    """

    def __init__(self):
        self.__graph: typing.List[Node] = []
        self.__id_map: typing.Dict[int, int] = {}
        self.__leaves: typing.Set[int] = set()
        self.__roots: typing.Set[int] = set()

    def add_node(self, name: str, rtti_address: int,
                 children: typing.Sequence[typing.Tuple[int, EdgeFlag]]):
        children = [Edge(addr, EdgeFlag(flags)) for addr, flags in children]

        for addr, flags in children:
            if addr not in self.__id_map:
                self.__id_map[addr] = len(self.__graph)
                self.__graph.append(Node(addr))
            self.__roots.discard(addr)

            child = self.__graph[self.__id_map[addr]]
            edge = Edge(rtti_address, flags)
            if edge not in child.parents:
                child.parents.append(edge)

        if rtti_address in self.__id_map:
            node = self.__graph[self.__id_map[rtti_address]]
            if node.initialized:
                logger.debug("RTTI at %#x already in the graph as `%s`" % (rtti_address, node.name))
                return

        if len(children) == 0:
            self.__leaves.add(rtti_address)

        if rtti_address in self.__id_map:
            node = self.__graph[self.__id_map[rtti_address]]
            node.name = name
            node.children = children
            node.initialized = True
        else:
            self.__roots.add(rtti_address)
            self.__id_map[rtti_address] = len(self.__graph)
            self.__graph.append(Node(rtti_address, name, children, True))

    def get_node_by_id(self, id: int) -> Node:
        index = self.__id_map.get(id)
        if index is None:
            raise NodeNotFoundError("No node with id %#x" % id)
        return self.__graph[index]

    def get_node_by_addr(self, addr: int) -> Node:
        # ids are addresses for now, this may change
        index = self.__id_map.get(addr)
        if index is None:
            raise NodeNotFoundError("No node at address %#x" % addr)
        return self.__graph[index]

    def roots(self) -> typing.Iterator[Node]:
        for id in list(self.__roots):
            yield self.__graph[self.__id_map[id]]

    def leaves(self) -> typing.Iterator[Node]:
        for id in list(self.__leaves):
            yield self.__graph[self.__id_map[id]]

    def nodes(self) -> typing.Iterator[Node]:
        return iter(list(self.__graph))

    def is_root(self, id: int) -> bool:
        return id in self.__roots

    def is_leaf(self, id: int) -> bool:
        return id in self.__leaves

    def __contains__(self, id: int) -> bool:
        return id in self.__id_map

    def __len__(self) -> int:
        return len(self.__graph)

    def walk(self) -> typing.Iterator[Node]:
        """BFS from the roots where a node is only reached once all of its
        parents were visited, i.e. derived classes come before their bases.
        """
        # parents hold every recorded edge, children only the first definition
        bases: typing.Dict[int, typing.List[int]] = defaultdict(list)
        for node in self.__graph:
            for parent_id, _ in node.parents:
                bases[parent_id].append(node.id)

        queue = deque(sorted(self.__roots))
        counters: typing.Dict[int, int] = {}

        while queue:
            node = self.get_node_by_id(queue.popleft())
            yield node

            for child_id in bases[node.id]:
                if child_id not in counters:
                    counters[child_id] = len(self.get_node_by_id(child_id).parents)

                counters[child_id] -= 1
                if counters[child_id] == 0:
                    queue.append(child_id)
