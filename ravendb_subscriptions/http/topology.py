from __future__ import annotations

from typing import List, Optional, Dict

from ravendb_subscriptions.exceptions.exceptions import DatabaseDoesNotExistException, AllTopologyNodesDownException
from ravendb_subscriptions.http.server_node import ServerNode


class Topology:
    def __init__(self, etag: int, nodes: List[ServerNode]):
        self.etag = etag
        self.nodes = nodes

    @classmethod
    def from_json(cls, json_dict: Dict) -> Topology:
        return cls(json_dict.get("Etag", 0), [ServerNode.from_json(node) for node in json_dict.get("Nodes", [])])


class CurrentIndexAndNode:
    def __init__(self, current_index: int, current_node: ServerNode):
        self.current_index = current_index
        self.current_node = current_node


class NodeSelector:
    class _NodeSelectorState:
        def __init__(self, topology: Topology):
            self.topology = topology
            self.nodes = topology.nodes
            self.failures = [0] * len(topology.nodes)

    def __init__(self, topology: Topology):
        self.__state = self._NodeSelectorState(topology)

    @property
    def topology(self) -> Topology:
        return self.__state.topology

    def on_failed_request(self, node_index: int) -> None:
        state = self.__state
        if node_index < 0 or node_index >= len(state.failures):
            return
        state.failures[node_index] += 1

    def on_update_topology(self, topology: Topology, force_update: bool = False) -> bool:
        if topology is None:
            return False

        state_etag = self.__state.topology.etag if self.__state.topology.etag else 0
        topology_etag = topology.etag if topology.etag else 0

        if state_etag >= topology_etag and not force_update:
            return False

        self.__state = NodeSelector._NodeSelectorState(topology)
        return True

    def get_preferred_node(self) -> CurrentIndexAndNode:
        state = self.__state
        for i in range(min(len(state.nodes), len(state.failures))):
            if state.failures[i] == 0 and state.nodes[i].url:
                return CurrentIndexAndNode(i, state.nodes[i])
        return self.unlikely_everyone_faulted_choice(state)

    @staticmethod
    def unlikely_everyone_faulted_choice(state: NodeSelector._NodeSelectorState) -> CurrentIndexAndNode:
        # all of them failed, the first one gets picked so the user sees an error (or it recovers)
        if len(state.nodes) == 0:
            raise DatabaseDoesNotExistException("There are no nodes in the topology at all")
        return CurrentIndexAndNode(0, state.nodes[0])

    def restore_node_index(self, node_index: int) -> None:
        state = self.__state
        if len(state.failures) <= node_index:
            return
        state.failures[node_index] = 0

    @staticmethod
    def throw_all_nodes_down(errors: Dict[ServerNode, Exception]) -> None:
        details = ", ".join(f"{node.url}: {error}" for node, error in errors.items())
        raise AllTopologyNodesDownException(f"Tried all nodes in the topology but none of them responded. {details}")
