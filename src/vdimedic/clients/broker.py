"""REST client for the VDI broker management API."""

from __future__ import annotations

from urllib.parse import quote

import httpx
from loguru import logger

from vdimedic.clients.base import (
    FleetQueryError,
    FleetQueryService,
    ObjectNotFoundError,
    PowerActionError,
    PowerActionService,
)
from vdimedic.models import BrokerConfig, MachineInfo, PowerActionHandle, SessionInfo


class BrokerClient(FleetQueryService, PowerActionService):
    """Client for one or more broker management endpoints.

    Keeps one pooled ``httpx.AsyncClient`` per endpoint, shared by every
    diagnostic record that targets that endpoint.
    """

    def __init__(
        self,
        config: BrokerConfig,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize the broker client.

        Args:
            config: Broker configuration (URL template, token, timeouts).
            transport: Optional transport override, mainly for tests.
        """
        self.config = config
        self._transport = transport
        self._clients: dict[str, httpx.AsyncClient] = {}

    def base_url(self, endpoint: str) -> str:
        """Base API URL for an endpoint."""
        return self.config.url_template.format(endpoint=endpoint).rstrip("/")

    def _get_client(self, endpoint: str) -> httpx.AsyncClient:
        """Get or create the HTTP client for an endpoint."""
        client = self._clients.get(endpoint)
        if client is None:
            headers = {"Accept": "application/json"}
            if self.config.token:
                headers["Authorization"] = f"Bearer {self.config.token}"
            client = httpx.AsyncClient(
                base_url=self.base_url(endpoint),
                headers=headers,
                timeout=self.config.timeout,
                verify=self.config.verify_tls,
                transport=self._transport,
            )
            self._clients[endpoint] = client
        return client

    async def close(self) -> None:
        """Close all endpoint clients."""
        for client in self._clients.values():
            await client.aclose()
        self._clients.clear()

    async def __aenter__(self) -> "BrokerClient":
        return self

    async def __aexit__(self, *args) -> None:
        await self.close()

    async def _get(self, endpoint: str, path: str, params: dict | None = None) -> httpx.Response:
        """GET a broker resource, mapping failures to FleetQueryError."""
        try:
            response = await self._get_client(endpoint).get(path, params=params)
        except httpx.TimeoutException as e:
            raise FleetQueryError(f"{endpoint}: timeout on {path}") from e
        except httpx.RequestError as e:
            raise FleetQueryError(f"{endpoint}: request error on {path}: {e}") from e

        if response.status_code == 404:
            raise ObjectNotFoundError(f"{endpoint}: {path} not found")
        if response.is_error:
            raise FleetQueryError(
                f"{endpoint}: {path} returned HTTP {response.status_code}"
            )
        return response

    async def get_session(self, endpoint: str, session_id: str) -> SessionInfo:
        response = await self._get(endpoint, f"/sessions/{quote(session_id, safe='')}")
        try:
            return SessionInfo.model_validate(response.json())
        except ValueError as e:
            raise FleetQueryError(f"{endpoint}: malformed session {session_id}: {e}") from e

    async def get_machine(self, endpoint: str, session_id: str) -> MachineInfo | None:
        try:
            response = await self._get(
                endpoint, f"/sessions/{quote(session_id, safe='')}/machine"
            )
        except ObjectNotFoundError:
            return None

        if response.status_code == 204 or not response.content:
            return None

        try:
            return MachineInfo.model_validate(response.json())
        except ValueError as e:
            raise FleetQueryError(
                f"{endpoint}: malformed machine for session {session_id}: {e}"
            ) from e

    async def find_candidate_machines(
        self,
        endpoint: str,
        group_pattern: str,
        failure_reasons: list[str],
    ) -> list[MachineInfo]:
        params = {
            "desktopGroupName": group_pattern,
            "lastConnectionFailure": ",".join(failure_reasons),
        }
        response = await self._get(endpoint, "/machines", params=params)

        data = response.json()
        items = data.get("items", []) if isinstance(data, dict) else data
        if not isinstance(items, list):
            raise FleetQueryError(f"{endpoint}: unexpected machine list payload")

        machines = []
        for item in items:
            try:
                machines.append(MachineInfo.model_validate(item))
            except ValueError as e:
                logger.warning(f"{endpoint}: skipping malformed machine record: {e}")

        logger.debug(f"{endpoint}: {len(machines)} machines match '{group_pattern}'")
        return machines

    async def reset(self, endpoint: str, machine_name: str) -> PowerActionHandle:
        path = f"/machines/{quote(machine_name, safe='')}/powerActions"
        try:
            response = await self._get_client(endpoint).post(path, json={"action": "Reset"})
        except httpx.RequestError as e:
            raise PowerActionError(f"{endpoint}: reset of {machine_name} failed: {e}") from e

        if response.is_error:
            raise PowerActionError(
                f"{endpoint}: reset of {machine_name} returned HTTP {response.status_code}"
            )

        try:
            return PowerActionHandle.model_validate(response.json())
        except ValueError as e:
            raise PowerActionError(f"{endpoint}: malformed power action response: {e}") from e
