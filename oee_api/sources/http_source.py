"""Fuentes HTTP: API REST genérica y API remota autenticada (OData/SAP)."""

from __future__ import annotations

import asyncio
import logging
import os
import re
from typing import Any, Mapping, Optional

import httpx

from .base import DataSource, SourceConfig, SourceType
from .errors import DataSourceError, ReadOnlySourceError, SourceHttpError, SourceTimeoutError

logger = logging.getLogger(__name__)

_ENV_PLACEHOLDER = re.compile(r"\$\{([^}:]+)(?::([^}]*))?\}")


def resolve_env_placeholders(value: Any) -> Any:
    """Sustituye ``${VAR}`` / ``${VAR:default}`` por variables de entorno."""
    if isinstance(value, str):
        return _ENV_PLACEHOLDER.sub(lambda m: os.getenv(m.group(1), m.group(2) or ""), value)
    if isinstance(value, dict):
        return {k: resolve_env_placeholders(v) for k, v in value.items()}
    if isinstance(value, list):
        return [resolve_env_placeholders(v) for v in value]
    return value


class HttpDataSource(DataSource):
    """Base para fuentes HTTP de solo lectura con timeout acotado."""

    default_timeout = 15.0

    def __init__(
        self,
        config: Optional[Mapping[str, Any]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(config)
        self.base_url = str(self.config.get("baseUrl", ""))
        self.timeout = float(self.config.get("timeout", self.default_timeout))
        self.headers: dict[str, str] = dict(self.config.get("headers", {}))
        self._transport = transport

    def _url(self, source_config: SourceConfig) -> str:
        return f"{self.base_url}{source_config.endpoint or ''}"

    async def _get_json(
        self,
        url: str,
        *,
        params: Optional[Mapping[str, Any]] = None,
        headers: Optional[Mapping[str, str]] = None,
        auth: Optional[httpx.Auth] = None,
    ) -> Any:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await asyncio.wait_for(
                    client.get(url, params=params, headers=headers, auth=auth),
                    timeout=self.timeout,
                )
        except (httpx.TimeoutException, asyncio.TimeoutError) as e:
            logger.error("[SOURCE] %s timed out after %.1fs: %s", self.name, self.timeout, url)
            raise SourceTimeoutError(self.name, self.timeout, url) from e
        except httpx.HTTPError as e:
            raise DataSourceError(f"{self.name} request to {url} failed: {e}", self.name) from e

        if not resp.is_success:
            raise SourceHttpError(self.name, resp.status_code, resp.reason_phrase)

        try:
            return resp.json()
        except ValueError as e:
            raise DataSourceError(f"{self.name} returned invalid JSON from {url}", self.name) from e

    async def update(self, source_config: SourceConfig, entry_id: str, patch: Mapping[str, Any]) -> Any:
        raise ReadOnlySourceError(self.name)


class RestApiDataSource(HttpDataSource):
    """API REST genérica: ``base_url + endpoint`` con cabeceras combinadas."""

    source_type = SourceType.REST

    async def fetch(self, source_config: SourceConfig) -> Any:
        url = self._url(source_config)
        headers = {"Content-Type": "application/json", **self.headers, **source_config.headers}
        return await self._get_json(url, headers=headers)


class RemoteApiDataSource(HttpDataSource):
    """API remota con basic auth y consulta estilo OData (SAP)."""

    source_type = SourceType.REMOTE_AUTH
    default_timeout = 30.0

    def __init__(
        self,
        config: Optional[Mapping[str, Any]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(config, transport)
        self.username = self.config.get("username")
        self.password = self.config.get("password")
        self.client = str(self.config.get("client", "100"))
        self.default_plant = self.config.get("defaultPlant")

    def build_params(self, source_config: SourceConfig) -> dict[str, str]:
        """Parámetros de consulta: estáticos, $filter, $select, $orderby, $top."""
        params = {
            key: str(value)
            for key, value in resolve_env_placeholders(source_config.static_params).items()
        }

        filters = []
        plant = source_config.plant or self.default_plant
        if plant:
            filters.append(f"Plant eq '{plant}'")
        if source_config.order_type:
            filters.append(f"OrderType eq '{source_config.order_type}'")
        if source_config.mrp_controller:
            filters.append(f"MRPController eq '{source_config.mrp_controller}'")
        if filters:
            params["$filter"] = " and ".join(filters)

        if source_config.select_fields:
            params["$select"] = ",".join(source_config.select_fields)
        if source_config.order_by:
            params["$orderby"] = source_config.order_by
        if source_config.top:
            params["$top"] = str(source_config.top)

        params["$format"] = "json"
        return params

    def transform(self, source_config: SourceConfig, data: Any) -> Any:
        """Extrae los registros de la respuesta.

        Orden: transform propio, ``result_path``, ``d.results`` (OData v2),
        ``value`` (OData v4), respuesta tal cual.
        """
        if source_config.transform is not None:
            return source_config.transform(data)

        if source_config.result_path:
            node = data
            for part in source_config.result_path.split("."):
                if not isinstance(node, dict) or part not in node:
                    raise DataSourceError(
                        f"result path {source_config.result_path!r} not found in response", self.name
                    )
                node = node[part]
            return node

        if isinstance(data, dict):
            d = data.get("d")
            if isinstance(d, dict) and "results" in d:
                return d["results"]
            if "value" in data:
                return data["value"]
        return data

    async def fetch(self, source_config: SourceConfig) -> Any:
        if not self.base_url:
            raise DataSourceError("Remote source requires 'baseUrl'", self.name)

        url = self._url(source_config)
        params = self.build_params(source_config)
        headers = {
            "Accept": "application/json",
            "sap-client": self.client,
            **self.headers,
            **source_config.headers,
        }
        auth = httpx.BasicAuth(self.username, self.password or "") if self.username else None

        logger.info("[SOURCE] Fetching remote data from %s", url)
        data = await self._get_json(url, params=params, headers=headers, auth=auth)
        return self.transform(source_config, data)

    async def update(self, source_config: SourceConfig, entry_id: str, patch: Mapping[str, Any]) -> Any:
        raise ReadOnlySourceError(self.name, "update not implemented for remote API")
