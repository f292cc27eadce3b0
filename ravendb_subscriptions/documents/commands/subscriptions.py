from __future__ import annotations

import json
from datetime import timedelta
from typing import Dict, Optional, List

import requests

from ravendb_subscriptions.documents.subscriptions.options import SubscriptionCreationOptions, SubscriptionUpdateOptions
from ravendb_subscriptions.documents.subscriptions.state import SubscriptionState
from ravendb_subscriptions.http.raven_command import RavenCommand, VoidRavenCommand
from ravendb_subscriptions.http.server_node import ServerNode
from ravendb_subscriptions.tools.utils import Utils


class SubscriptionNameResult:
    """Body of the create and update responses, both answer with the name the server settled on."""

    def __init__(self, name: str):
        self.name = name

    @classmethod
    def from_json(cls, json_dict: Dict) -> SubscriptionNameResult:
        return cls(json_dict["Name"])


class CreateSubscriptionCommand(RavenCommand[SubscriptionNameResult]):
    def __init__(self, options: SubscriptionCreationOptions, key: Optional[str] = None):
        super().__init__(SubscriptionNameResult)
        if options is None:
            raise ValueError("Options cannot be None")
        self._options = options
        self._key = key

    def create_request(self, node: ServerNode) -> requests.Request:
        url = f"{node.url}/databases/{node.database}/subscriptions"

        if self._key is not None:
            url += "?id=" + Utils.quote_key(self._key)

        return requests.Request("PUT", url, data=json.dumps(self._options.to_json()))

    def set_response(self, response: Optional[str], from_cache: bool) -> None:
        if response is None:
            self._throw_invalid_response()
        self.result = SubscriptionNameResult.from_json(json.loads(response))

    def is_read_request(self) -> bool:
        return False


class TcpConnectionInfo:
    def __init__(
        self,
        port: Optional[int] = None,
        url: Optional[str] = None,
        certificate: Optional[str] = None,
        urls: Optional[List[str]] = None,
        node_tag: Optional[str] = None,
    ):
        self.port = port
        self.url = url
        self.certificate = certificate
        self.urls = urls
        self.node_tag = node_tag

    @classmethod
    def from_json(cls, json_dict: Dict) -> TcpConnectionInfo:
        return cls(
            json_dict.get("Port", None),
            json_dict.get("Url", None),
            json_dict.get("Certificate", None),
            json_dict.get("Urls", None),
            json_dict.get("NodeTag", None),
        )


class GetTcpInfoForRemoteTaskCommand(RavenCommand[TcpConnectionInfo]):
    def __init__(self, tag: str, remote_database: str, remote_task: str, verify_database: bool = False):
        super(GetTcpInfoForRemoteTaskCommand, self).__init__(TcpConnectionInfo)
        if remote_database is None:
            raise ValueError("remote_database cannot be None")

        if remote_task is None:
            raise ValueError("remote_task cannot be None")

        self._remote_database = remote_database
        self._remote_task = remote_task
        self._tag = tag
        self._verify_database = verify_database
        self.timeout = timedelta(seconds=15)

    def create_request(self, node: ServerNode) -> requests.Request:
        url = (
            f"{node.url}/info/remote-task/tcp?"
            f"database={Utils.quote_key(self._remote_database)}"
            f"&remote-task={Utils.quote_key(self._remote_task)}"
            f"&tag={Utils.quote_key(self._tag, reserved_slash=True)}"
        )

        if self._verify_database:
            url += "&verify-database=true"

        self.requested_node = node
        return requests.Request("GET", url)

    def set_response(self, response: Optional[str], from_cache: bool) -> None:
        if response is None:
            self._throw_invalid_response()

        self.result = TcpConnectionInfo.from_json(json.loads(response))

    def is_read_request(self) -> bool:
        return True


class GetSubscriptionsCommand(RavenCommand[List[SubscriptionState]]):
    def __init__(self, start: int, page_size: int):
        super(GetSubscriptionsCommand, self).__init__(list)
        self._start = start
        self._page_size = page_size

    def create_request(self, node: ServerNode) -> requests.Request:
        url = f"{node.url}/databases/{node.database}/subscriptions?start={self._start}&pageSize={self._page_size}"
        return requests.Request("GET", url)

    def set_response(self, response: Optional[str], from_cache: bool) -> None:
        if response is None:
            self.result = None
            return

        self.result = [SubscriptionState.from_json(state) for state in json.loads(response)["Results"]]

    def is_read_request(self) -> bool:
        return True


class DeleteSubscriptionCommand(VoidRavenCommand):
    def __init__(self, name: str):
        super(DeleteSubscriptionCommand, self).__init__()
        self._name = name

    def create_request(self, node: ServerNode) -> requests.Request:
        url = f"{node.url}/databases/{node.database}/subscriptions?taskName={Utils.quote_key(self._name)}"
        return requests.Request("DELETE", url)


class GetSubscriptionStateCommand(RavenCommand[SubscriptionState]):
    def __init__(self, subscription_name: str):
        super(GetSubscriptionStateCommand, self).__init__(SubscriptionState)
        self._subscription_name = subscription_name

    def is_read_request(self) -> bool:
        return True

    def create_request(self, node: ServerNode) -> requests.Request:
        url = (
            f"{node.url}/databases/{node.database}/subscriptions/state?name={Utils.quote_key(self._subscription_name)}"
        )
        return requests.Request("GET", url)

    def set_response(self, response: Optional[str], from_cache: bool) -> None:
        if response is None:
            self.result = None
            return
        self.result = SubscriptionState.from_json(json.loads(response))


class DropSubscriptionConnectionCommand(VoidRavenCommand):
    def __init__(self, name: Optional[str] = None):
        super(DropSubscriptionConnectionCommand, self).__init__()
        self._name = name

    def create_request(self, node: ServerNode) -> requests.Request:
        path = [node.url, "/databases/", node.database, "/subscriptions/drop"]

        if self._name and not self._name.isspace():
            path.append("?name=")
            path.append(Utils.quote_key(self._name))

        return requests.Request("POST", "".join(path))


class UpdateSubscriptionCommand(RavenCommand[SubscriptionNameResult]):
    def __init__(self, options: SubscriptionUpdateOptions):
        super(UpdateSubscriptionCommand, self).__init__(SubscriptionNameResult)
        self._options = options

    def create_request(self, node: ServerNode) -> requests.Request:
        url = f"{node.url}/databases/{node.database}/subscriptions/update"
        return requests.Request("POST", url, data=json.dumps(self._options.to_json()))

    def set_response(self, response: Optional[str], from_cache: bool) -> None:
        if response is None:
            self._throw_invalid_response()

        self.result = SubscriptionNameResult.from_json(json.loads(response))

    def is_read_request(self) -> bool:
        return False
