from __future__ import annotations

import json
from typing import Optional

import requests

from ravendb_subscriptions.http.raven_command import RavenCommand
from ravendb_subscriptions.http.server_node import ServerNode
from ravendb_subscriptions.http.topology import Topology
from ravendb_subscriptions.tools.utils import Utils


class GetDatabaseTopologyCommand(RavenCommand[Topology]):
    def __init__(self, debug_tag: Optional[str] = None):
        super().__init__(Topology)
        self.__debug_tag = debug_tag

    def is_read_request(self) -> bool:
        return True

    def create_request(self, node: ServerNode) -> requests.Request:
        url = f"{node.url}/topology?name={Utils.quote_key(node.database)}"
        if self.__debug_tag:
            url += f"&{self.__debug_tag}"
        return requests.Request("GET", url)

    def set_response(self, response: str, from_cache: bool) -> None:
        if response is None:
            return

        self.result = Topology.from_json(json.loads(response))

