from __future__ import annotations

from enum import Enum
from typing import Optional, Dict


class ServerNode:
    class Role(Enum):
        NONE = "None"
        PROMOTABLE = "Promotable"
        MEMBER = "Member"
        REHAB = "Rehab"

        def __str__(self):
            return self.value

    def __init__(
        self,
        url: str,
        database: Optional[str] = None,
        cluster_tag: Optional[str] = None,
        server_role: Optional[Role] = None,
    ):
        self.url = url
        self.database = database
        self.cluster_tag = cluster_tag
        self.server_role = server_role

    def __eq__(self, other) -> bool:
        if self is other:
            return True
        if other is None or type(self) != type(other):
            return False
        return self.url == other.url and self.database == other.database

    def __hash__(self) -> int:
        return hash((self.url, self.database))

    def __repr__(self) -> str:
        return f"ServerNode(url={self.url!r}, database={self.database!r}, cluster_tag={self.cluster_tag!r})"

    @classmethod
    def from_json(cls, json_dict: Dict) -> ServerNode:
        role = json_dict.get("ServerRole")
        return cls(
            json_dict["Url"],
            json_dict.get("Database"),
            json_dict.get("ClusterTag"),
            ServerNode.Role(role) if role else None,
        )
