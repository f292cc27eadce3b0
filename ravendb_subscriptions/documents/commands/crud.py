from __future__ import annotations

import json
from typing import Optional, List, Dict

import requests

from ravendb_subscriptions.http.raven_command import RavenCommand
from ravendb_subscriptions.http.server_node import ServerNode
from ravendb_subscriptions.tools.utils import Utils


class GetDocumentsResult:
    def __init__(self, includes: Optional[Dict] = None, results: Optional[List[Optional[Dict]]] = None):
        self.includes = includes
        self.results = results

    @classmethod
    def from_json(cls, json_dict: Dict) -> GetDocumentsResult:
        return cls(json_dict.get("Includes", None), json_dict.get("Results", None))


class GetDocumentsCommand(RavenCommand[GetDocumentsResult]):
    def __init__(self, keys: List[str], includes: Optional[List[str]] = None, metadata_only: bool = False):
        super(GetDocumentsCommand, self).__init__(GetDocumentsResult)
        if not keys:
            raise ValueError("Please supply at least one id")
        self._keys = keys
        self._includes = includes
        self._metadata_only = metadata_only

    @classmethod
    def from_multiple_ids(
        cls, keys: List[str], includes: List[str] = None, metadata_only: bool = False
    ) -> GetDocumentsCommand:
        return cls(keys, includes, metadata_only)

    def create_request(self, node: ServerNode) -> requests.Request:
        path_builder: List[str] = [node.url, f"/databases/{node.database}/docs?"]

        if self._metadata_only:
            path_builder.append("&metadataOnly=true")

        for include in self._includes or []:
            path_builder.append(f"&include={include}")

        # keep the caller's order, the server answers positionally
        seen = set()
        for key in self._keys:
            if key in seen:
                continue
            seen.add(key)
            path_builder.append(f"&id={Utils.quote_key(key) if key else ''}")

        return requests.Request("GET", "".join(path_builder))

    def set_response(self, response: Optional[str], from_cache: bool) -> None:
        self.result = GetDocumentsResult.from_json(json.loads(response)) if response is not None else None

    def is_read_request(self) -> bool:
        return True
