import base64
import logging
import socket
import ssl
from typing import Tuple, Optional
from urllib.parse import urlparse

from ravendb_subscriptions.documents.commands.subscriptions import TcpConnectionInfo


class TcpUtils:
    logger = logging.getLogger("TcpUtils")

    @staticmethod
    def connect(
        url_string: str,
        server_certificate_base64: Optional[str] = None,
        client_certificate_pem_path: Optional[str] = None,
        certificate_private_key_password: Optional[str] = None,
        connect_timeout: Optional[float] = None,
        receive_buffer_size: Optional[int] = None,
        send_buffer_size: Optional[int] = None,
    ) -> socket.socket:
        parsed = urlparse(url_string if "://" in url_string else f"tcp://{url_string}")
        if parsed.hostname is None or parsed.port is None:
            raise ValueError(f"Invalid tcp url: '{url_string}'")

        s = socket.create_connection((parsed.hostname, parsed.port), timeout=connect_timeout)
        s.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        if receive_buffer_size:
            s.setsockopt(socket.SOL_SOCKET, socket.SO_RCVBUF, receive_buffer_size)
        if send_buffer_size:
            s.setsockopt(socket.SOL_SOCKET, socket.SO_SNDBUF, send_buffer_size)

        is_ssl_socket = server_certificate_base64 and client_certificate_pem_path
        if is_ssl_socket:
            context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
            # the server certificate is pinned below instead of going through a CA chain
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE
            context.load_cert_chain(client_certificate_pem_path, password=certificate_private_key_password)
            s = context.wrap_socket(s, server_hostname=parsed.hostname)
            if base64.b64decode(server_certificate_base64) != s.getpeercert(True):
                s.close()
                raise ConnectionError("Failed to validate public server certificate.")
        return s

    @staticmethod
    def connect_with_priority(
        info: TcpConnectionInfo,
        server_cert_base64: Optional[str] = None,
        client_certificate_pem_path: Optional[str] = None,
        certificate_private_key_password: Optional[str] = None,
        connect_timeout: Optional[float] = None,
        receive_buffer_size: Optional[int] = None,
        send_buffer_size: Optional[int] = None,
    ) -> Tuple[socket.socket, str]:
        if info.urls:
            for url in info.urls:
                try:
                    s = TcpUtils.connect(
                        url,
                        server_cert_base64,
                        client_certificate_pem_path,
                        certificate_private_key_password,
                        connect_timeout,
                        receive_buffer_size,
                        send_buffer_size,
                    )
                    return s, url
                except OSError as e:
                    TcpUtils.logger.info(f"Failed to connect to {url}, trying the next url", exc_info=e)

        s = TcpUtils.connect(
            info.url,
            server_cert_base64,
            client_certificate_pem_path,
            certificate_private_key_password,
            connect_timeout,
            receive_buffer_size,
            send_buffer_size,
        )

        return s, info.url
