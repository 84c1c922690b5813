#!/usr/bin/env python3
# -*- coding: utf-8 -*-

import base64
import contextvars
import functools
import hashlib
import logging
from logging.handlers import RotatingFileHandler
import re
import socket
import ssl
import sys
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, NamedTuple, Optional, Sequence, Tuple
from urllib.parse import urlparse

import structlog
from structlog.dev import ConsoleRenderer
from structlog.stdlib import ProcessorFormatter

import configargparse
import requests
import requests.auth
import requests.certs
import requests.utils
from requests.adapters import DEFAULT_POOLBLOCK, HTTPAdapter
from urllib3.connection import HTTPConnection, HTTPSConnection
from urllib3.connectionpool import HTTPConnectionPool, HTTPSConnectionPool
from urllib3.exceptions import (
    ConnectTimeoutError,
    NameResolutionError,
    NewConnectionError,
)

from cryptography import x509

__version__ = "1.0.0"

DEFAULT_INTERVAL_MS = 90_000
DEFAULT_TIMEOUT = "10s"
USER_AGENT = f"url-probe/{__version__}"

# --------------------------- Duration parsing ---------------------------

_DUR_TOKEN = re.compile(r"(?P<num>\d+(?:\.\d+)?)(?P<unit>ms|s|m|h|d)", re.IGNORECASE)
_UNIT_FACTORS_MS = {"ms": 1.0, "s": 1000.0, "m": 60_000.0, "h": 3_600_000.0, "d": 86_400_000.0}


def parse_duration_ms(value) -> int:
    """Parse '90000', '90s', '1m30s', '500ms' -> milliseconds (int). Bare numbers = milliseconds."""
    if isinstance(value, (int, float)):
        return int(round(value))
    s = str(value).strip().lower()
    try:
        return int(round(float(s)))
    except ValueError:
        pass
    pos = 0
    total = 0.0
    for m in _DUR_TOKEN.finditer(s):
        if m.start() != pos:
            raise ValueError(f"Invalid duration syntax at: {s[pos:]}")
        total += float(m.group("num")) * _UNIT_FACTORS_MS[m.group("unit").lower()]
        pos = m.end()
    if not s or pos != len(s):
        raise ValueError(f"Invalid duration syntax at: {s[pos:]!r}")
    return int(round(total))


# --------------------------- Configuration ------------------------------


class Proxy(NamedTuple):
    """A route to the origin server: either DIRECT or through one proxy."""

    type: str
    host: Optional[str] = None
    port: Optional[int] = None

    @classmethod
    def from_url(cls, url) -> "Proxy":
        pu = urlparse(str(url))
        return cls((pu.scheme or "http").upper(), pu.hostname, pu.port)

    @property
    def url(self) -> Optional[str]:
        if self.type == "DIRECT":
            return None
        return f"{self.type.lower()}://{self.host}:{self.port}"

    @property
    def address(self) -> Optional[Tuple[str, int]]:
        if self.type == "DIRECT":
            return None
        return self.host, self.port

    def __str__(self) -> str:
        if self.type == "DIRECT":
            return "DIRECT"
        return f"{self.type} @ {self.host}:{self.port}"


NO_PROXY = Proxy("DIRECT")


def _present(value: Optional[str]) -> bool:
    return value is not None and value.strip() != ""


@dataclass(frozen=True)
class ProbeConfig:
    url: str
    interval_ms: int = DEFAULT_INTERVAL_MS
    timeout_s: float = 10.0
    proxy_host: Optional[str] = None
    proxy_port: Optional[int] = None
    recreate_clients: bool = False
    username: Optional[str] = None
    password: Optional[str] = None
    ca_bundle: Optional[str] = None
    log_format: str = "console"
    log_file: Optional[Path] = None
    config_file: Optional[str] = None

    @property
    def interval_s(self) -> float:
        return self.interval_ms / 1000.0

    @property
    def credentials(self) -> Optional[Tuple[str, str]]:
        """Basic-auth pair, only when both halves are non-blank."""
        if _present(self.username) and _present(self.password):
            return self.username, self.password
        return None

    @property
    def proxy(self) -> Optional[Proxy]:
        if _present(self.proxy_host) and self.proxy_port is not None:
            return Proxy("HTTP", self.proxy_host.strip(), self.proxy_port)
        return None


# --------------------------- TLS cert helpers ---------------------------


def describe_certificate(der_bytes: bytes) -> dict:
    """Summarise a DER certificate for the handshake log."""
    cert = x509.load_der_x509_certificate(der_bytes)

    sans = []
    try:
        san_ext = cert.extensions.get_extension_for_oid(
            x509.oid.ExtensionOID.SUBJECT_ALTERNATIVE_NAME
        )
        for name in san_ext.value:
            if isinstance(name, x509.DNSName):
                sans.append(f"DNS:{name.value}")
            elif isinstance(name, x509.IPAddress):
                sans.append(f"IP:{name.value}")
            else:
                sans.append(str(name.value))
    except x509.ExtensionNotFound:
        pass

    return {
        "subject": cert.subject.rfc4514_string(),
        "issuer": cert.issuer.rfc4514_string(),
        "serial_hex": format(cert.serial_number, "x"),
        "not_before": cert.not_valid_before_utc.strftime("%Y%m%d%H%M%SZ"),
        "not_after": cert.not_valid_after_utc.strftime("%Y%m%d%H%M%SZ"),
        "sans": sans,
        "fingerprint_sha256": hashlib.sha256(der_bytes).hexdigest().upper(),
    }


def _format_address(address) -> str:
    host, port = address[0], address[1]
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


# (host, port) the connection being established wants TLS with. Through an
# HTTP proxy the wrapped socket's peer is the proxy, not this endpoint.
_TLS_TARGET: contextvars.ContextVar = contextvars.ContextVar("tls_target", default=None)


def _certificate_summary(der: bytes) -> Optional[dict]:
    if not der:
        return None
    try:
        return describe_certificate(der)
    except ValueError as e:
        structlog.get_logger().warning(
            "cert_parse_failed",
            fingerprint_sha256=hashlib.sha256(der).hexdigest().upper(),
            message=str(e),
        )
        return None


class LoggingSSLContext(ssl.SSLContext):
    """SSLContext that logs every socket it is asked to secure.

    The handshake and all crypto stay with :class:`ssl.SSLContext`; this only
    reports the endpoint right before delegating and the negotiated session
    right after.
    """

    def wrap_socket(
        self,
        sock,
        server_side=False,
        do_handshake_on_connect=True,
        suppress_ragged_eofs=True,
        server_hostname=None,
        session=None,
    ):
        log = structlog.get_logger()
        peer = sock.getpeername()
        local = _format_address(sock.getsockname())
        target = _TLS_TARGET.get()
        if server_hostname:
            port = target[1] if target else peer[1]
            log.info("socket_connection", host=server_hostname, port=port, local=local)
        else:
            log.info("socket_connection_by_address", address=peer[0], port=peer[1], local=local)

        ssl_sock = super().wrap_socket(
            sock,
            server_side=server_side,
            do_handshake_on_connect=do_handshake_on_connect,
            suppress_ragged_eofs=suppress_ragged_eofs,
            server_hostname=server_hostname,
            session=session,
        )
        if do_handshake_on_connect:
            cipher = ssl_sock.cipher()
            der = ssl_sock.getpeercert(binary_form=True)
            log.info(
                "tls_handshake",
                host=server_hostname,
                tls_protocol=ssl_sock.version(),
                tls_cipher=(cipher[0] if cipher else None),
                alpn=ssl_sock.selected_alpn_protocol(),
                cert=_certificate_summary(der),
            )
        return ssl_sock

    def wrap_bio(self, incoming, outgoing, server_side=False, server_hostname=None, session=None):
        # TLS-in-TLS: the outer socket already belongs to an HTTPS proxy
        target = _TLS_TARGET.get()
        structlog.get_logger().info(
            "socket_connection",
            host=server_hostname,
            port=(target[1] if target else None),
            transport="memory_bio",
        )
        return super().wrap_bio(
            incoming,
            outgoing,
            server_side=server_side,
            server_hostname=server_hostname,
            session=session,
        )


def create_ssl_context(ca_bundle: Optional[str] = None) -> LoggingSSLContext:
    ctx = LoggingSSLContext(ssl.PROTOCOL_TLS_CLIENT)
    ctx.load_default_certs(ssl.Purpose.SERVER_AUTH)
    ctx.load_verify_locations(cafile=requests.certs.where())
    if ca_bundle:
        ctx.load_verify_locations(cafile=ca_bundle)
    return ctx


# --------------------------- DNS & connection events --------------------


class SystemDns:
    """Resolver backed by the platform's getaddrinfo."""

    def lookup(self, hostname: str) -> List[str]:
        try:
            infos = socket.getaddrinfo(hostname, None, proto=socket.IPPROTO_TCP)
        except UnicodeError as e:
            # idna rejects empty labels and labels over 63 characters
            raise socket.gaierror(socket.EAI_NONAME, f"Invalid host name {hostname!r}: {e}") from e
        addresses = []
        for _family, _type, _proto, _canonname, sockaddr in infos:
            if sockaddr[0] not in addresses:
                addresses.append(sockaddr[0])
        return addresses


class EventListener:
    """Connection and DNS lifecycle callbacks. The base class ignores them all."""

    def dns_start(self, domain_name: str) -> None:
        pass

    def dns_end(self, domain_name: str, addresses: List[str]) -> None:
        pass

    def connect_start(self, address, proxy: Proxy) -> None:
        pass

    def connect_end(self, address, proxy: Proxy, protocol: Optional[str]) -> None:
        pass

    def connect_failed(self, address, proxy: Proxy, protocol: Optional[str], error: BaseException) -> None:
        pass


class ConnectionListener(EventListener):
    def dns_start(self, domain_name):
        structlog.get_logger().info("dns_start", domain=domain_name)

    def dns_end(self, domain_name, addresses):
        structlog.get_logger().info("dns_end", domain=domain_name, addresses=list(addresses))

    def connect_start(self, address, proxy):
        structlog.get_logger().info(
            "connect_start", address=_format_address(address), proxy=str(proxy)
        )

    def connect_end(self, address, proxy, protocol):
        structlog.get_logger().info(
            "connect_end",
            address=_format_address(address),
            proxy=str(proxy),
            protocol=protocol,
        )

    def connect_failed(self, address, proxy, protocol, error):
        structlog.get_logger().warning(
            "connect_failed",
            address=_format_address(address),
            proxy=str(proxy),
            protocol=protocol,
            exception=type(error).__name__,
            message=str(error),
        )


SYSTEM_DNS = SystemDns()
NO_EVENTS = EventListener()


def _negotiated_protocol(sock) -> str:
    selected = getattr(sock, "selected_alpn_protocol", None)
    return (selected() if selected else None) or "http/1.1"


class _ObservedConnectionMixin:
    """Resolves through the client's Dns and reports each step to its listener."""

    dns = SYSTEM_DNS
    listener = NO_EVENTS
    _remote = None

    def _route(self) -> Proxy:
        return Proxy.from_url(self.proxy) if self.proxy else NO_PROXY

    def _tls_target(self) -> Tuple[str, int]:
        if self._tunnel_host:
            return self._tunnel_host, self._tunnel_port
        return self.host, self.port

    def connect(self):
        self._remote = None
        token = _TLS_TARGET.set(self._tls_target())
        try:
            super().connect()
        except Exception as e:
            # dial failures were already reported per address
            if self._remote is not None:
                self.listener.connect_failed(self._remote, self._route(), None, e)
            raise
        finally:
            _TLS_TARGET.reset(token)
        self.listener.connect_end(self._remote, self._route(), _negotiated_protocol(self.sock))

    def _new_conn(self):
        host = self._dns_host
        self.listener.dns_start(host)
        try:
            addresses = self.dns.lookup(host)
        except socket.gaierror as e:
            raise NameResolutionError(host, self, e) from e
        self.listener.dns_end(host, addresses)

        timeout = self.timeout if isinstance(self.timeout, (int, float)) else None
        error: Optional[OSError] = None
        for address in addresses:
            remote = (address, self.port)
            self.listener.connect_start(remote, self._route())
            try:
                sock = socket.create_connection(
                    remote, timeout, source_address=self.source_address
                )
            except OSError as e:
                self.listener.connect_failed(remote, self._route(), None, e)
                error = e
                continue
            for option in self.socket_options or ():
                sock.setsockopt(*option)
            self._remote = remote
            return sock

        if isinstance(error, socket.timeout):
            raise ConnectTimeoutError(
                self, f"Connection to {self.host} timed out. (connect timeout={timeout})"
            ) from error
        raise NewConnectionError(
            self, f"Failed to establish a new connection: {error or 'no addresses for ' + host}"
        ) from error


class ObservedHTTPConnection(_ObservedConnectionMixin, HTTPConnection):
    pass


class ObservedHTTPSConnection(_ObservedConnectionMixin, HTTPSConnection):
    pass


class _ObservedPoolMixin:
    def __init__(self, host, port=None, dns=None, listener=None, **kw):
        super().__init__(host, port, **kw)
        self.dns = dns or SYSTEM_DNS
        self.listener = listener or NO_EVENTS

    def _new_conn(self):
        conn = super()._new_conn()
        conn.dns = self.dns
        conn.listener = self.listener
        return conn


class ObservedHTTPConnectionPool(_ObservedPoolMixin, HTTPConnectionPool):
    ConnectionCls = ObservedHTTPConnection


class ObservedHTTPSConnectionPool(_ObservedPoolMixin, HTTPSConnectionPool):
    ConnectionCls = ObservedHTTPSConnection


# --------------------------- Proxy selection ----------------------------


class ProxySelector:
    def select(self, uri: str) -> List[Proxy]:
        raise NotImplementedError

    def connect_failed(self, uri: str, address, error: BaseException) -> None:
        structlog.get_logger().warning(
            "proxy_connect_failed",
            url=uri,
            proxy=(_format_address(address) if address else None),
            exception=type(error).__name__,
            message=str(error),
        )


class FixedProxySelector(ProxySelector):
    """Routes every URI through the same HTTP proxy, whatever the destination."""

    def __init__(self, host: str, port: int):
        self.proxy = Proxy("HTTP", host, port)

    def select(self, uri):
        return [self.proxy]


class SystemProxySelector(ProxySelector):
    """Honours *_PROXY / NO_PROXY from the environment."""

    def select(self, uri):
        proxies = requests.utils.get_environ_proxies(uri)
        scheme = urlparse(uri).scheme.lower()
        proxy_url = proxies.get(scheme) or proxies.get("all")
        if not proxy_url:
            return [NO_PROXY]
        return [Proxy.from_url(requests.utils.prepend_scheme_if_needed(proxy_url, "http"))]


# --------------------------- Authentication -----------------------------


class BasicAuthenticator(requests.auth.AuthBase):
    """Answers 401/407 challenges by re-sending the request with Basic credentials.

    Nothing is sent up front: the first attempt goes out bare, like a client
    that only learns about authentication from the server's challenge.
    """

    CHALLENGE_CODES = (401, 407)

    def __init__(self, username: str, password: str):
        token = f"{username}:{password}".encode()
        self.header = "Basic " + base64.b64encode(token).decode()

    def __call__(self, request):
        request.register_hook("response", self.authenticate)
        return request

    def authenticate(self, response, **kwargs):
        if response.status_code not in self.CHALLENGE_CODES:
            return response

        structlog.get_logger().info(
            "auth_challenge",
            url=response.url,
            status=response.status_code,
            challenge=(
                response.headers.get("WWW-Authenticate")
                or response.headers.get("Proxy-Authenticate")
            ),
        )
        # Drain so the connection can go back to the pool
        response.content
        response.close()

        retry = response.request.copy()
        retry.headers["Authorization"] = self.header
        follow_up = response.connection.send(retry, **kwargs)
        follow_up.history.append(response)
        follow_up.request = retry
        return follow_up


# --------------------------- Interceptors -------------------------------


class Interceptor:
    def intercept(self, chain: "InterceptorChain"):
        raise NotImplementedError


class InterceptorChain:
    """Hands a request through interceptors, then to ``terminal``."""

    def __init__(
        self,
        interceptors: Sequence[Interceptor],
        request,
        terminal: Callable,
        connection: Optional[str] = None,
        index: int = 0,
    ):
        self.interceptors = interceptors
        self.request = request
        self.terminal = terminal
        self.connection = connection
        self.index = index

    def proceed(self, request):
        if self.index >= len(self.interceptors):
            return self.terminal(request)
        following = InterceptorChain(
            self.interceptors, request, self.terminal, self.connection, self.index + 1
        )
        return self.interceptors[self.index].intercept(following)


class LoggingInterceptor(Interceptor):
    def __init__(self, layer: str):
        self.layer = layer

    def intercept(self, chain):
        log = structlog.get_logger()
        request = chain.request
        log.info(
            "sending_request",
            layer=self.layer,
            method=request.method,
            url=request.url,
            connection=chain.connection,
            headers=dict(request.headers),
        )
        start = time.perf_counter()
        response = chain.proceed(request)
        elapsed_ms = (time.perf_counter() - start) * 1000
        log.info(
            "received_response",
            layer=self.layer,
            url=response.url,
            status=response.status_code,
            elapsed_ms=round(elapsed_ms, 1),
            headers=dict(response.headers),
        )
        return response


def describe_connection(url: str, proxy: Proxy) -> str:
    u = urlparse(url)
    port = u.port or (443 if u.scheme == "https" else 80)
    return f"Connection{{{u.hostname}:{port}, proxy={proxy}}}"


# --------------------------- Client -------------------------------------


class ObservingHTTPAdapter(HTTPAdapter):
    """HTTPAdapter whose pools dial through observed connections.

    Every send asks the proxy selector for a route and runs the network
    interceptors around the actual wire exchange, so redirects and auth
    retries are each seen separately.
    """

    def __init__(
        self,
        proxy_selector: Optional[ProxySelector] = None,
        interceptors: Sequence[Interceptor] = (),
        ssl_context: Optional[ssl.SSLContext] = None,
        dns=None,
        listener: Optional[EventListener] = None,
        **kwargs,
    ):
        # init_poolmanager runs from HTTPAdapter.__init__
        self.proxy_selector = proxy_selector or SystemProxySelector()
        self.interceptors = list(interceptors)
        self.ssl_context = ssl_context
        self.dns = dns or SYSTEM_DNS
        self.listener = listener or NO_EVENTS
        super().__init__(**kwargs)

    def _pool_classes(self) -> dict:
        return {
            "http": functools.partial(
                ObservedHTTPConnectionPool, dns=self.dns, listener=self.listener
            ),
            "https": functools.partial(
                ObservedHTTPSConnectionPool, dns=self.dns, listener=self.listener
            ),
        }

    def init_poolmanager(self, connections, maxsize, block=DEFAULT_POOLBLOCK, **pool_kwargs):
        if self.ssl_context is not None:
            pool_kwargs.setdefault("ssl_context", self.ssl_context)
        super().init_poolmanager(connections, maxsize, block=block, **pool_kwargs)
        self.poolmanager.pool_classes_by_scheme = self._pool_classes()

    def proxy_manager_for(self, proxy, **proxy_kwargs):
        if proxy not in self.proxy_manager and self.ssl_context is not None:
            proxy_kwargs.setdefault("ssl_context", self.ssl_context)
        manager = super().proxy_manager_for(proxy, **proxy_kwargs)
        manager.pool_classes_by_scheme = self._pool_classes()
        return manager

    def send(self, request, stream=False, timeout=None, verify=True, cert=None, proxies=None):
        proxy = self.proxy_selector.select(request.url)[0]
        route = {} if proxy.url is None else {"http": proxy.url, "https": proxy.url}
        transmit = functools.partial(
            super().send,
            stream=stream,
            timeout=timeout,
            verify=verify,
            cert=cert,
            proxies=route,
        )
        chain = InterceptorChain(
            self.interceptors,
            request,
            transmit,
            connection=describe_connection(request.url, proxy),
        )
        try:
            return chain.proceed(request)
        except requests.exceptions.ProxyError as e:
            self.proxy_selector.connect_failed(request.url, proxy.address, e)
            raise

    def evict_all(self) -> None:
        """Close every idle pooled connection, direct and proxied."""
        self.poolmanager.clear()
        for manager in self.proxy_manager.values():
            manager.clear()


class ProbeClient:
    def __init__(
        self,
        session: requests.Session,
        adapter: ObservingHTTPAdapter,
        interceptors: Sequence[Interceptor] = (),
        dns=None,
        timeout: float = 10.0,
        verify=True,
    ):
        self.session = session
        self.adapter = adapter
        self.interceptors = list(interceptors)
        self.dns = dns or SYSTEM_DNS
        self.timeout = timeout
        self.verify = verify

    def new_request(self, url: str, method: str = "GET") -> requests.PreparedRequest:
        return self.session.prepare_request(requests.Request(method, url))

    def execute(self, request: requests.PreparedRequest) -> requests.Response:
        """Send with the application interceptors wrapped around the whole call."""
        chain = InterceptorChain(self.interceptors, request, self._transmit)
        return chain.proceed(request)

    def _transmit(self, request):
        return self.session.send(
            request,
            stream=True,
            allow_redirects=True,
            timeout=(self.timeout, self.timeout),
            verify=self.verify,
        )

    def get(self, url: str) -> requests.Response:
        return self.execute(self.new_request(url))

    def evict_all(self) -> None:
        self.adapter.evict_all()

    def close(self) -> None:
        self.session.close()


def build_client(
    config: ProbeConfig, dns=None, listener: Optional[EventListener] = None
) -> ProbeClient:
    dns = dns or SYSTEM_DNS
    session = requests.Session()
    session.trust_env = False
    session.headers["User-Agent"] = USER_AGENT

    credentials = config.credentials
    if credentials is not None:
        session.auth = BasicAuthenticator(*credentials)

    proxy = config.proxy
    if proxy is not None:
        selector: ProxySelector = FixedProxySelector(proxy.host, proxy.port)
    else:
        selector = SystemProxySelector()

    adapter = ObservingHTTPAdapter(
        proxy_selector=selector,
        interceptors=[LoggingInterceptor("NETWORK")],
        ssl_context=create_ssl_context(config.ca_bundle),
        dns=dns,
        listener=listener or ConnectionListener(),
    )
    session.mount("http://", adapter)
    session.mount("https://", adapter)

    return ProbeClient(
        session,
        adapter,
        interceptors=[LoggingInterceptor("APPLICATION")],
        dns=dns,
        timeout=config.timeout_s,
    )


# --------------------------- Logging setup ------------------------------

_SENSITIVE_HEADERS = ("authorization", "proxy-authorization")


def redact_credentials(_logger, _method_name, event_dict):
    """Mask Authorization header values anywhere in the event, keeping the scheme."""

    def _mask(value):
        if not isinstance(value, str):
            return "***"
        scheme, _, _ = value.partition(" ")
        return f"{scheme} ***" if scheme != value else "***"

    def _redact(obj):
        if isinstance(obj, dict):
            return {
                k: (
                    _mask(v)
                    if isinstance(k, str) and k.lower() in _SENSITIVE_HEADERS
                    else _redact(v)
                )
                for k, v in obj.items()
            }
        if isinstance(obj, list):
            return [_redact(v) for v in obj]
        if isinstance(obj, tuple):
            return tuple(_redact(v) for v in obj)
        return obj

    for key, val in list(event_dict.items()):
        event_dict[key] = _redact(val)
    return event_dict


def setup_logging(log_file: Optional[Path], log_format: str):
    """Configure logging so that file logs are always JSON while console respects selected format."""
    console_handler = logging.StreamHandler(sys.stdout)

    file_handler = None
    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            str(log_file), maxBytes=5_000_000, backupCount=3
        )

    pre_chain = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True, key="ts"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if log_format == "console":
        console_processor = ConsoleRenderer(colors=True)
    elif log_format == "json":
        console_processor = structlog.processors.JSONRenderer()
    else:
        console_processor = structlog.processors.KeyValueRenderer(
            key_order=["ts", "level", "event"]
        )

    console_handler.setFormatter(
        ProcessorFormatter(processor=console_processor, foreign_pre_chain=pre_chain)
    )

    if file_handler is not None:
        file_handler.setFormatter(
            ProcessorFormatter(
                processor=structlog.processors.JSONRenderer(),
                foreign_pre_chain=pre_chain,
            )
        )

    handlers = [console_handler]
    if file_handler is not None:
        handlers.append(file_handler)

    logging.basicConfig(level=logging.INFO, handlers=handlers)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True, key="ts"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            redact_credentials,
            ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    return structlog.get_logger("url_probe")


# --------------------------- Probe --------------------------------------


def probe_url(client: ProbeClient, url: str) -> None:
    """Issue one GET and log its body. Never raises."""
    log = structlog.get_logger()
    try:
        with client.get(url) as response:
            try:
                body = response.text
            except requests.RequestException as e:
                log.error(
                    "body_read_failed",
                    url=url,
                    status=response.status_code,
                    exception=type(e).__name__,
                    message=str(e),
                    exc_info=e,
                )
                return
            if body:
                log.info("response_body", url=url, status=response.status_code, body=body)
            else:
                log.info("empty_body", url=url, status=response.status_code)
    except Exception as e:
        log.error(
            "request_failed",
            url=url,
            exception=type(e).__name__,
            message=str(e),
            exc_info=e,
        )


def check_dns(client: ProbeClient, url: str, proxy: Optional[Proxy] = None) -> None:
    """Resolve the target host, then the proxy host; each lookup stands alone."""
    log = structlog.get_logger()
    hosts = [urlparse(url).hostname]
    if proxy is not None:
        hosts.append(proxy.host)

    for host in hosts:
        log.info("dns_lookup", host=host)
        try:
            addresses = client.dns.lookup(host)
        except (OSError, UnicodeError) as e:
            log.error(
                "dns_lookup_failed",
                host=host,
                url=url,
                exception=type(e).__name__,
                message=str(e),
                exc_info=e,
            )
            continue
        for address in addresses:
            log.info("dns_address", host=host, address=address)


class ProbeLoop:
    """Probe, check DNS, sleep, refresh the client; repeat until stopped.

    ``run(max_cycles=n)`` ends after ``n`` cycles. The final cycle does not
    sleep, and when clients are recreated it does not build a replacement
    that nobody would use. Pool eviction still happens.
    """

    def __init__(self, config: ProbeConfig, client_factory: Optional[Callable[[], ProbeClient]] = None):
        self.config = config
        self.client_factory = client_factory or functools.partial(build_client, config)
        self._stopped = threading.Event()

    def stop(self) -> None:
        self._stopped.set()

    def run(self, max_cycles: Optional[int] = None) -> int:
        log = structlog.get_logger()
        client = self.client_factory()
        cycle = 0
        try:
            while True:
                cycle += 1
                with structlog.contextvars.bound_contextvars(cycle=cycle):
                    probe_url(client, self.config.url)
                    check_dns(client, self.config.url, self.config.proxy)

                last = max_cycles is not None and cycle >= max_cycles
                if not last:
                    self._stopped.wait(self.config.interval_s)
                last = last or self._stopped.is_set()

                if self.config.recreate_clients:
                    if last:
                        break
                    client.close()
                    client = self.client_factory()
                    log.info("client_recreated", cycle=cycle)
                else:
                    client.evict_all()
                    log.info("connections_evicted", cycle=cycle)
                    if last:
                        break
        finally:
            client.close()
        return cycle


# --------------------------- CLI & main --------------------------------


def setup_parser(default_cfg: Path) -> configargparse.ArgParser:
    p = configargparse.ArgParser(
        description="Recurring HTTP GET probe with request, connection, DNS and TLS logging.",
        prog="url_probe",
        default_config_files=[str(default_cfg)],
        config_file_parser_class=configargparse.YAMLConfigFileParser,
    )
    p.add(
        "-c",
        "--config",
        is_config_file=True,
        help=f"Config file path (default: {default_cfg})",
    )

    p.add("url", help="URL to probe (http or https)")

    p.add(
        "--request-interval",
        env_var="URLPROBE_REQUEST_INTERVAL",
        default=str(DEFAULT_INTERVAL_MS),
        help="Pause between probes; bare numbers are milliseconds, units ms/s/m/h/d accepted. Default: 90000",
    )
    p.add(
        "--timeout",
        env_var="URLPROBE_TIMEOUT",
        default=DEFAULT_TIMEOUT,
        help=f"Connect and read timeout (e.g., 750ms, 10s). Default: {DEFAULT_TIMEOUT}",
    )

    p.add("--proxy-host", env_var="URLPROBE_PROXY_HOST", help="HTTP proxy host")
    p.add("--proxy-port", env_var="URLPROBE_PROXY_PORT", type=int, help="HTTP proxy port")

    p.add(
        "--recreate-clients",
        env_var="URLPROBE_RECREATE_CLIENTS",
        action="store_true",
        help="Build a fresh client every cycle instead of evicting pooled connections",
    )

    p.add("--user", env_var="TEST_USER", help="Basic-auth user")
    p.add(
        "--password",
        env_var="TEST_PASS",
        help="Basic-auth password (prefer the TEST_PASS environment variable)",
    )

    p.add(
        "--ca-bundle",
        env_var="URLPROBE_CA_BUNDLE",
        help="Additional CA bundle file trusted for server certificates",
    )

    p.add(
        "--log-format",
        choices=["json", "kv", "console"],
        env_var="URLPROBE_LOG_FORMAT",
        default="console",
        help="Log output format",
    )
    p.add(
        "--log-file",
        env_var="URLPROBE_LOG_FILE",
        help="Also write JSON logs to this file (rotated at 5 MB)",
    )

    return p


def load_config(argv: Optional[Sequence[str]] = None, default_cfg: Optional[Path] = None) -> ProbeConfig:
    """Parse arguments, environment and config file. Exits with status 2 on bad input."""
    if default_cfg is None:
        default_cfg = Path.home() / ".config" / "urlprobe" / "config.yaml"

    p = setup_parser(default_cfg)
    args = p.parse_args(argv)

    url = args.url.strip()
    u = urlparse(url)
    try:
        u.port
    except ValueError as e:
        p.error(f"Malformed URL {url!r}: {e}")
    if u.scheme not in ("http", "https") or not u.hostname:
        p.error(f"Malformed URL {url!r}: expecting exactly one http(s) URL argument")

    try:
        interval_ms = parse_duration_ms(args.request_interval)
        timeout_ms = parse_duration_ms(args.timeout)
        if interval_ms <= 0 or timeout_ms <= 0:
            raise ValueError("Durations must be > 0")
    except ValueError as e:
        p.error(f"Bad duration: {e}")

    ca_bundle = args.ca_bundle
    if ca_bundle:
        ca_path = Path(ca_bundle).expanduser()
        if not ca_path.exists():
            p.error(f"CA bundle not found: {ca_path}")
        ca_bundle = str(ca_path)

    return ProbeConfig(
        url=url,
        interval_ms=interval_ms,
        timeout_s=timeout_ms / 1000.0,
        proxy_host=args.proxy_host,
        proxy_port=args.proxy_port,
        recreate_clients=args.recreate_clients,
        username=args.user,
        password=args.password,
        ca_bundle=ca_bundle,
        log_format=args.log_format,
        log_file=(Path(args.log_file).expanduser() if args.log_file else None),
        config_file=args.config,
    )


def main(argv: Optional[Sequence[str]] = None):
    config = load_config(argv)
    log = setup_logging(config.log_file, config.log_format)

    proxy = config.proxy
    log.info(
        "start",
        url=config.url,
        interval_ms=config.interval_ms,
        timeout_s=config.timeout_s,
        via_proxy=proxy is not None,
        proxy=(str(proxy) if proxy else None),
        basic_auth=config.credentials is not None,
        recreate_clients=config.recreate_clients,
        log_format=config.log_format,
        log_file=(str(config.log_file) if config.log_file else None),
        config_file=config.config_file,
        ca_bundle=config.ca_bundle,
    )

    loop = ProbeLoop(config)
    try:
        loop.run()
    except KeyboardInterrupt:
        log.info("stop", url=config.url)


if __name__ == "__main__":
    main()
