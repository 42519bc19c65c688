"""
Narrow adapter over the kubernetes client.

Only the calls the debug session needs are exposed: pod create, phase
lookup, delete, and an exec channel. Failures are translated into
ClusterAPIError subclasses so callers can tell "not found" and "already
exists" apart without importing kubernetes.
"""

from __future__ import annotations

import json
from typing import Any, Protocol

import urllib3
from kubernetes import client, config
from kubernetes.client.rest import ApiException
from kubernetes.config.config_exception import ConfigException
from kubernetes.stream import stream
from kubernetes.stream.ws_client import RESIZE_CHANNEL, WSClient
from websocket import WebSocketException

from foren.util.errors import ConfigError, ForenError


class ClusterAPIError(ForenError):
    """Raised when the cluster API rejects or fails a request."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class NotFoundError(ClusterAPIError):
    """Raised when the requested object does not exist."""


class AlreadyExistsError(ClusterAPIError):
    """Raised when creating an object whose name is taken."""


class ChannelError(ClusterAPIError):
    """Raised when an exec channel breaks."""


class ExecChannel(Protocol):
    def is_open(self) -> bool: ...

    def update(self, timeout: float) -> None: ...

    def read_stdout(self) -> bytes: ...

    def read_stderr(self) -> bytes: ...

    def write_stdin(self, data: bytes) -> None: ...

    def resize(self, rows: int, cols: int) -> None: ...

    def close(self) -> None: ...

    @property
    def exit_code(self) -> int | None: ...


class ClusterClient(Protocol):
    def create_pod(self, namespace: str, body: dict[str, Any], timeout: float | None) -> None: ...

    def get_pod_phase(self, namespace: str, name: str, timeout: float | None) -> str: ...

    def delete_pod(self, namespace: str, name: str, timeout: float | None) -> None: ...

    def open_exec(
        self,
        namespace: str,
        pod: str,
        container: str,
        command: list[str],
        *,
        tty: bool,
        stdin: bool,
    ) -> ExecChannel: ...


def _translate(exc: ApiException, what: str) -> ClusterAPIError:
    detail = f"{what}: {exc.status} {exc.reason}"
    if exc.status == 404:
        return NotFoundError(detail, exc.status)
    if exc.status == 409:
        return AlreadyExistsError(detail, exc.status)
    return ClusterAPIError(detail, exc.status)


class WebSocketExecChannel:
    """
    ExecChannel backed by the kubernetes websocket stream client.

    The client runs in binary mode so frames are relayed as raw bytes; a
    multibyte character split across frames is reassembled by the reader.
    """

    def __init__(self, ws: WSClient) -> None:
        self._ws = ws

    def is_open(self) -> bool:
        return bool(self._ws.is_open())

    def update(self, timeout: float) -> None:
        try:
            self._ws.update(timeout=timeout)
        except (WebSocketException, OSError) as exc:
            raise ChannelError(f"exec channel update failed: {exc}") from exc

    def read_stdout(self) -> bytes:
        try:
            if not self._ws.peek_stdout(timeout=0):
                return b""
            return bytes(self._ws.read_stdout(timeout=0))
        except (WebSocketException, OSError) as exc:
            raise ChannelError(f"exec channel read failed: {exc}") from exc

    def read_stderr(self) -> bytes:
        try:
            if not self._ws.peek_stderr(timeout=0):
                return b""
            return bytes(self._ws.read_stderr(timeout=0))
        except (WebSocketException, OSError) as exc:
            raise ChannelError(f"exec channel read failed: {exc}") from exc

    def write_stdin(self, data: bytes) -> None:
        try:
            self._ws.write_stdin(data)
        except (WebSocketException, OSError) as exc:
            raise ChannelError(f"exec channel write failed: {exc}") from exc

    def resize(self, rows: int, cols: int) -> None:
        payload = json.dumps({"Height": rows, "Width": cols})
        try:
            self._ws.write_channel(RESIZE_CHANNEL, payload)
        except (WebSocketException, OSError) as exc:
            raise ChannelError(f"exec channel resize failed: {exc}") from exc

    def close(self) -> None:
        self._ws.close()

    @property
    def exit_code(self) -> int | None:
        if self._ws.is_open():
            return None
        try:
            return self._ws.returncode
        except (ValueError, TypeError, KeyError):
            return None


class OfflineCluster:
    """ClusterClient for dry runs: every call is refused."""

    def _refuse(self, what: str) -> ClusterAPIError:
        return ClusterAPIError(f"{what}: cluster access disabled (dry run)")

    def create_pod(self, namespace: str, body: dict[str, Any], timeout: float | None) -> None:
        raise self._refuse("create pod")

    def get_pod_phase(self, namespace: str, name: str, timeout: float | None) -> str:
        raise self._refuse("get pod")

    def delete_pod(self, namespace: str, name: str, timeout: float | None) -> None:
        raise self._refuse("delete pod")

    def open_exec(
        self,
        namespace: str,
        pod: str,
        container: str,
        command: list[str],
        *,
        tty: bool,
        stdin: bool,
    ) -> ExecChannel:
        raise self._refuse("open exec channel")


class KubeCluster:
    """ClusterClient talking to a real API server."""

    def __init__(self, core_api: client.CoreV1Api) -> None:
        self._core = core_api

    @classmethod
    def from_kubeconfig(
        cls,
        kubeconfig: str | None = None,
        context: str | None = None,
        *,
        in_cluster: bool = False,
    ) -> KubeCluster:
        try:
            if in_cluster:
                configuration = client.Configuration()
                config.load_incluster_config(client_configuration=configuration)
                api_client = client.ApiClient(configuration)
            else:
                api_client = config.new_client_from_config(
                    config_file=kubeconfig, context=context
                )
        except ConfigException as exc:
            raise ConfigError(f"failed to load cluster config: {exc}") from exc
        return cls(client.CoreV1Api(api_client))

    def create_pod(self, namespace: str, body: dict[str, Any], timeout: float | None) -> None:
        try:
            self._core.create_namespaced_pod(
                namespace=namespace, body=body, _request_timeout=timeout
            )
        except ApiException as exc:
            raise _translate(exc, "create pod") from exc
        except urllib3.exceptions.HTTPError as exc:
            raise ClusterAPIError(f"create pod: {exc}") from exc

    def get_pod_phase(self, namespace: str, name: str, timeout: float | None) -> str:
        try:
            pod = self._core.read_namespaced_pod(
                name=name, namespace=namespace, _request_timeout=timeout
            )
        except ApiException as exc:
            raise _translate(exc, "get pod") from exc
        except urllib3.exceptions.HTTPError as exc:
            raise ClusterAPIError(f"get pod: {exc}") from exc
        if pod.status is None or pod.status.phase is None:
            return "Pending"
        return str(pod.status.phase)

    def delete_pod(self, namespace: str, name: str, timeout: float | None) -> None:
        try:
            self._core.delete_namespaced_pod(
                name=name,
                namespace=namespace,
                grace_period_seconds=0,
                _request_timeout=timeout,
            )
        except ApiException as exc:
            raise _translate(exc, "delete pod") from exc
        except urllib3.exceptions.HTTPError as exc:
            raise ClusterAPIError(f"delete pod: {exc}") from exc

    def open_exec(
        self,
        namespace: str,
        pod: str,
        container: str,
        command: list[str],
        *,
        tty: bool,
        stdin: bool,
    ) -> ExecChannel:
        try:
            ws = stream(
                self._core.connect_get_namespaced_pod_exec,
                pod,
                namespace,
                container=container,
                command=command,
                stdin=stdin,
                stdout=True,
                stderr=True,
                tty=tty,
                binary=True,
                capture_all=False,
                _preload_content=False,
            )
        except ApiException as exc:
            raise _translate(exc, "open exec channel") from exc
        except (WebSocketException, OSError, urllib3.exceptions.HTTPError) as exc:
            raise ChannelError(f"open exec channel: {exc}") from exc
        return WebSocketExecChannel(ws)
