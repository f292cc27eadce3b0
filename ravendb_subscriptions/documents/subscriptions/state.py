from __future__ import annotations

import datetime
from typing import Optional, Dict

from ravendb_subscriptions.tools.utils import Utils


class SubscriptionState:
    def __init__(
        self,
        query: Optional[str] = None,
        change_vector_for_next_batch_starting_point: Optional[str] = None,
        subscription_id: Optional[int] = None,
        subscription_name: Optional[str] = None,
        mentor_node: Optional[str] = None,
        node_tag: Optional[str] = None,
        last_batch_ack_time: Optional[datetime.datetime] = None,
        last_client_connection_time: Optional[datetime.datetime] = None,
        disabled: Optional[bool] = None,
    ):
        self.query = query
        self.change_vector_for_next_batch_starting_point = change_vector_for_next_batch_starting_point
        self.subscription_id = subscription_id
        self.subscription_name = subscription_name
        self.mentor_node = mentor_node
        self.node_tag = node_tag
        self.last_batch_ack_time = last_batch_ack_time
        self.last_client_connection_time = last_client_connection_time
        self.disabled = disabled

    @classmethod
    def from_json(cls, json_dict: Dict) -> SubscriptionState:
        return cls(
            json_dict["Query"],
            json_dict.get("ChangeVectorForNextBatchStartingPoint"),
            json_dict.get("SubscriptionId"),
            json_dict["SubscriptionName"],
            json_dict.get("MentorNode"),
            json_dict.get("NodeTag"),
            Utils.string_to_datetime(json_dict.get("LastBatchAckTime")),
            Utils.string_to_datetime(json_dict.get("LastClientConnectionTime")),
            json_dict.get("Disabled", False),
        )

    def to_json(self) -> Dict:
        return {
            "Query": self.query,
            "ChangeVectorForNextBatchStartingPoint": self.change_vector_for_next_batch_starting_point,
            "SubscriptionId": self.subscription_id,
            "SubscriptionName": self.subscription_name,
            "MentorNode": self.mentor_node,
            "NodeTag": self.node_tag,
            "LastBatchAckTime": Utils.datetime_to_string(self.last_batch_ack_time)
            if self.last_batch_ack_time
            else None,
            "LastClientConnectionTime": Utils.datetime_to_string(self.last_client_connection_time)
            if self.last_client_connection_time
            else None,
            "Disabled": self.disabled or False,
        }
