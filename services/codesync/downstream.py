"""
HTTP clients for the services notified after a sync.

  - purge                 CDN purge by paths and/or surrogate keys
  - discovery reindex     re-register the project in the discovery inventory
  - content config merge  merge the content bus id into the site config
  - mount table deploy    publish the parsed fstab

An endpoint left empty in the configuration is skipped with a warning.
"""

from __future__ import annotations

from typing import Any, Optional

import httpx
from loguru import logger

from .config import DownstreamConfig
from .utils import StatusCodeError


class DownstreamClient:
    """Thin JSON-over-HTTP client for the downstream services."""

    def __init__(
        self,
        config: Optional[DownstreamConfig] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.config = config or DownstreamConfig()
        headers = {"User-Agent": "codesync/1.0"}
        if self.config.token:
            headers["Authorization"] = f"Bearer {self.config.token}"
        self._client = httpx.Client(
            headers=headers,
            timeout=self.config.timeout,
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "DownstreamClient":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    # =========================================================================
    # Public API
    # =========================================================================

    def purge(
        self,
        org: str,
        site: str,
        keys: Optional[list[str]] = None,
        paths: Optional[list[str]] = None,
        scope: str = "preview-and-live",
    ) -> bool:
        """Purge explicit paths and/or surrogate keys."""
        keys = list(dict.fromkeys(keys or []))
        paths = list(dict.fromkeys(paths or []))
        if not keys and not paths:
            return True
        logger.info(f"[purge] {org}/{site} keys={keys} paths={paths}")
        return self._post(self.config.purge_url, "purge", {
            "org": org,
            "site": site,
            "keys": keys,
            "paths": paths,
            "scope": scope,
        })

    def reindex(self, org: str, site: str) -> bool:
        logger.info(f"[discover] reindexing {org}/{site}")
        return self._post(self.config.discovery_url, "reindex", {"org": org, "site": site})

    def merge_content_config(self, org: str, site: str, content_bus_id: str) -> bool:
        logger.info(f"[config] merging content config for {org}/{site}: {content_bus_id}")
        return self._post(self.config.content_config_url, "content config", {
            "org": org,
            "site": site,
            "contentBusId": content_bus_id,
        })

    def deploy_mount_table(self, org: str, site: str, fstab: dict[str, Any]) -> bool:
        logger.info(f"[fstab] deploying mount table for {org}/{site}")
        return self._post(self.config.mount_deploy_url, "mount table", {
            "org": org,
            "site": site,
            "fstab": fstab,
        })

    # =========================================================================
    # Internal Methods
    # =========================================================================

    def _post(self, url: str, name: str, payload: dict[str, Any]) -> bool:
        if not url:
            logger.warning(f"no {name} endpoint configured. skipping.")
            return False
        try:
            response = self._client.post(url, json=payload)
        except httpx.HTTPError as e:
            raise StatusCodeError(f"{name} request to {url} failed: {e}", 502) from e
        if not response.is_success:
            raise StatusCodeError(
                f"{name} request to {url} failed: {response.status_code} {response.text[:200]}",
                response.status_code,
            )
        return True
