from __future__ import annotations

import logging
from enum import Enum
from typing import Optional, Tuple, Dict, Callable

from ravendb_subscriptions.exceptions.exceptions import SubscriptionProtocolMismatchException
from ravendb_subscriptions.tools.parsers import TcpStream


class TcpConnectionHeaderMessage:
    class OperationTypes(Enum):
        DROP = "Drop"
        SUBSCRIPTION = "Subscription"

        def __str__(self):
            return self.value

    def __init__(
        self,
        database_name: Optional[str] = None,
        operation: Optional[OperationTypes] = None,
        operation_version: Optional[int] = None,
        info: Optional[str] = None,
    ):
        self.database_name = database_name
        self.operation = operation
        self.operation_version = operation_version
        self.info = info

    def to_json(self) -> Dict:
        return {
            "DatabaseName": self.database_name,
            "Operation": self.operation.value if self.operation else None,
            "OperationVersion": self.operation_version,
            "Info": self.info,
        }

    NUMBER_OR_RETRIES_FOR_SENDING_TCP_HEADER = 2
    DROP_BASE_LINE = -2
    SUBSCRIPTION_BASE_LINE = 40
    SUBSCRIPTION_INCLUDES = 41_400
    SUBSCRIPTION_COUNTER_INCLUDES = 50_000
    SUBSCRIPTION_TIME_SERIES_INCLUDES = 51_000

    SUBSCRIPTION_TCP_VERSION = SUBSCRIPTION_TIME_SERIES_INCLUDES

    class SupportedFeatures:
        class DropFeatures:
            base_line = True

        class SubscriptionFeatures:
            base_line = True

            def __init__(
                self,
                includes: Optional[bool] = None,
                counter_includes: Optional[bool] = None,
                time_series_includes: Optional[bool] = None,
            ):
                self.includes = includes
                self.counter_includes = counter_includes
                self.time_series_includes = time_series_includes

        def __init__(
            self,
            version: int,
            drop: Optional[DropFeatures] = None,
            subscription: Optional[SubscriptionFeatures] = None,
        ):
            self.protocol_version = version
            self.drop = drop
            self.subscription = subscription

    operations_to_supported_protocol_versions = {
        OperationTypes.DROP: [DROP_BASE_LINE],
        OperationTypes.SUBSCRIPTION: [
            SUBSCRIPTION_TIME_SERIES_INCLUDES,
            SUBSCRIPTION_COUNTER_INCLUDES,
            SUBSCRIPTION_INCLUDES,
            SUBSCRIPTION_BASE_LINE,
        ],
    }

    supported_features_by_protocol = {
        OperationTypes.DROP: {DROP_BASE_LINE: SupportedFeatures(DROP_BASE_LINE, drop=SupportedFeatures.DropFeatures())},
        OperationTypes.SUBSCRIPTION: {
            SUBSCRIPTION_BASE_LINE: SupportedFeatures(
                SUBSCRIPTION_BASE_LINE, subscription=SupportedFeatures.SubscriptionFeatures()
            ),
            SUBSCRIPTION_INCLUDES: SupportedFeatures(
                SUBSCRIPTION_INCLUDES, subscription=SupportedFeatures.SubscriptionFeatures(True)
            ),
            SUBSCRIPTION_COUNTER_INCLUDES: SupportedFeatures(
                SUBSCRIPTION_COUNTER_INCLUDES, subscription=SupportedFeatures.SubscriptionFeatures(True, True)
            ),
            SUBSCRIPTION_TIME_SERIES_INCLUDES: SupportedFeatures(
                SUBSCRIPTION_TIME_SERIES_INCLUDES, subscription=SupportedFeatures.SubscriptionFeatures(True, True, True)
            ),
        },
    }

    class SupportedStatus(Enum):
        OUT_OF_RANGE = "OutOfRange"
        NOT_SUPPORTED = "NotSupported"
        SUPPORTED = "Supported"

        def __str__(self):
            return self.value

    @staticmethod
    def operation_version_supported(operation_type: OperationTypes, version: int) -> Tuple[SupportedStatus, int]:
        """
        Finds the highest version we speak that is not above the given one.
        OUT_OF_RANGE means the given version is below everything we support.
        """
        current = -1
        supported_protocols = TcpConnectionHeaderMessage.operations_to_supported_protocol_versions.get(operation_type)
        if supported_protocols is None:
            raise ValueError(f"Operation '{operation_type}' has no supported protocol versions")

        for ver in supported_protocols:
            current = ver
            if ver == version:
                return TcpConnectionHeaderMessage.SupportedStatus.SUPPORTED, current

            if ver < version:
                return TcpConnectionHeaderMessage.SupportedStatus.NOT_SUPPORTED, current

        return TcpConnectionHeaderMessage.SupportedStatus.OUT_OF_RANGE, current

    @staticmethod
    def get_supported_features_for(op_type: OperationTypes, protocol_version: int) -> SupportedFeatures:
        features = TcpConnectionHeaderMessage.supported_features_by_protocol.get(op_type, {}).get(protocol_version)
        if features is None:
            raise ValueError(f"{op_type} in protocol {protocol_version} was not found in the features set")
        return features


class TcpNegotiateParameters:
    def __init__(
        self,
        operation: Optional[TcpConnectionHeaderMessage.OperationTypes] = None,
        version: Optional[int] = None,
        database: Optional[str] = None,
        destination_node_tag: Optional[str] = None,
        destination_url: Optional[str] = None,
        read_response_and_get_version_callback: Optional[Callable[[str], int]] = None,
    ):
        self.operation = operation
        self.version = version
        self.database = database
        self.destination_node_tag = destination_node_tag
        self.destination_url = destination_url
        self.read_response_and_get_version_callback = read_response_and_get_version_callback


class TcpNegotiation:
    logger = logging.getLogger("TcpNegotiation")
    OUT_OF_RANGE_STATUS = -1
    DROP_STATUS = -2

    @classmethod
    def negotiate_protocol_version(
        cls, stream: TcpStream, parameters: TcpNegotiateParameters
    ) -> TcpConnectionHeaderMessage.SupportedFeatures:
        destination = parameters.destination_node_tag or parameters.destination_url
        cls.logger.info(f"Start of negotiation for {parameters.operation} operation with {destination}")
        current = parameters.version
        sent_headers = 0
        while True:
            if sent_headers >= TcpConnectionHeaderMessage.NUMBER_OR_RETRIES_FOR_SENDING_TCP_HEADER:
                raise SubscriptionProtocolMismatchException(
                    f"Could not agree on a {parameters.operation} protocol version with {destination} "
                    f"after {sent_headers} attempts, last offered version was {current}"
                )

            cls._send_tcp_version_info(stream, parameters, current)
            sent_headers += 1
            version = parameters.read_response_and_get_version_callback(parameters.destination_url)

            cls.logger.info(
                f"Read response from {destination} for {parameters.operation}, received version is '{version}'"
            )

            if version == current:
                break

            if version == cls.DROP_STATUS:
                return TcpConnectionHeaderMessage.get_supported_features_for(
                    TcpConnectionHeaderMessage.OperationTypes.DROP, TcpConnectionHeaderMessage.DROP_BASE_LINE
                )

            status, current = TcpConnectionHeaderMessage.operation_version_supported(parameters.operation, version)
            if status == TcpConnectionHeaderMessage.SupportedStatus.OUT_OF_RANGE:
                cls._send_tcp_version_info(stream, parameters, cls.OUT_OF_RANGE_STATUS)
                raise SubscriptionProtocolMismatchException(
                    f"The {parameters.operation} version {version} is out of range, our lowest version is {current}"
                )

            cls.logger.info(
                f"The version {version} is {status}, will try to agree on '{current}' "
                f"for {parameters.operation} with {destination}"
            )

        cls.logger.info(f"{destination} agreed on version {current} for {parameters.operation}")

        return TcpConnectionHeaderMessage.get_supported_features_for(parameters.operation, current)

    @classmethod
    def _send_tcp_version_info(cls, stream: TcpStream, parameters: TcpNegotiateParameters, current_version: int) -> None:
        cls.logger.info(f"Send negotiation for {parameters.operation} in version {current_version}")
        header = TcpConnectionHeaderMessage(
            parameters.database,
            parameters.operation,
            current_version,
        )
        json_dict = header.to_json()
        del json_dict["Info"]
        stream.send_json(json_dict)


class TcpConnectionStatus(Enum):
    OK = "Ok"
    AUTHORIZATION_FAILED = "AuthorizationFailed"
    TCP_VERSION_MISMATCH = "TcpVersionMismatch"


class TcpConnectionHeaderResponse:
    def __init__(self, status: TcpConnectionStatus, message: str, version: int):
        self.status = status
        self.message = message
        self.version = version

    @classmethod
    def from_json(cls, json_dict: Dict) -> TcpConnectionHeaderResponse:
        return cls(
            TcpConnectionStatus(json_dict.get("Status", None)),
            json_dict.get("Message", None),
            json_dict.get("Version", None),
        )
