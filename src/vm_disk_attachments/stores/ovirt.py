"""oVirt engine attachment store.

Talks to the oVirt REST API (``/ovirt-engine/api``) with JSON bodies:

    GET    /vms/{vm}/diskattachments
    GET    /vms/{vm}/diskattachments/{id}
    POST   /vms/{vm}/diskattachments
    DELETE /vms/{vm}/diskattachments/{id}
    GET    /disks/{id}
    DELETE /disks/{id}

HTTP 404 maps to NotFoundFailure, transport errors and 5xx to transient
RemoteFailure, anything else non-2xx to a permanent RemoteFailure.
"""
import logging
import ssl
from pathlib import Path
from typing import Any, Optional, Union

import httpx

from .base import (
    Attachment,
    AttachmentStore,
    Disk,
    DiskInterface,
    DiskStatus,
    ImageFormat,
    NotFoundFailure,
    RemoteFailure,
    StoreConfig,
)
from ..utils.connection import with_retry

logger = logging.getLogger(__name__)


def _as_bool(value: Any) -> bool:
    """oVirt renders booleans as the strings "true"/"false"."""
    if isinstance(value, bool):
        return value
    return str(value).lower() == "true"


def build_ssl_context(config: StoreConfig) -> Union[ssl.SSLContext, bool]:
    """Build the TLS verification setting for httpx from the engine config.

    Returns False when verification is disabled. Without any configured CA
    the system trust store is used.
    """
    if config.tls_insecure:
        return False

    custom_ca = config.tls_ca_files or config.tls_ca_dirs or config.tls_ca_bundle
    if config.tls_system or not custom_ca:
        context = ssl.create_default_context()
    else:
        context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
        context.check_hostname = True
        context.verify_mode = ssl.CERT_REQUIRED

    for ca_file in config.tls_ca_files:
        context.load_verify_locations(cafile=ca_file)
    for ca_dir in config.tls_ca_dirs:
        for entry in sorted(Path(ca_dir).iterdir()):
            if entry.is_file() and entry.suffix in (".pem", ".crt"):
                context.load_verify_locations(cafile=str(entry))
    if config.tls_ca_bundle:
        context.load_verify_locations(cadata=config.tls_ca_bundle)

    return context


class OvirtStore(AttachmentStore):
    """Attachment store for an oVirt engine."""

    def __init__(
        self,
        store_id: str,
        config: StoreConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(store_id, config)
        self._http: Optional[httpx.AsyncClient] = None
        self._transport = transport
        self._base_url = config.url.rstrip("/")

    @with_retry(max_attempts=3, min_wait=1, max_wait=10)
    async def connect(self) -> bool:
        """Open the HTTP session to the engine."""
        if self._http is not None:
            return True

        logger.info(f"Connecting to oVirt engine {self.store_id} at {self._base_url}")

        headers = {
            "Accept": "application/json",
            "Content-Type": "application/json",
            "Version": "4",
        }
        headers.update(self.config.extra_headers)

        self._http = httpx.AsyncClient(
            base_url=self._base_url,
            auth=(self.config.username, self.config.get_password()),
            headers=headers,
            timeout=httpx.Timeout(self.config.timeout),
            verify=build_ssl_context(self.config),
            transport=self._transport,
        )
        self._connected = True
        return True

    async def disconnect(self) -> None:
        if self._http is not None:
            await self._http.aclose()
            self._http = None
        self._connected = False
        logger.info(f"Disconnected from {self.store_id}")

    async def _request(
        self,
        operation: str,
        method: str,
        path: str,
        json: Optional[dict] = None,
        params: Optional[dict] = None,
    ) -> dict:
        """Issue one request and translate failures into RemoteFailure."""
        if self._http is None:
            await self.connect()

        try:
            resp = await self._http.request(method, path, json=json, params=params)
        except httpx.TransportError as e:
            raise RemoteFailure(operation, f"transport error: {e}", cause=e, transient=True)

        if resp.status_code == 404:
            raise NotFoundFailure(operation, f"{method} {path}: not found")

        if resp.status_code >= 400:
            detail = self._fault_detail(resp)
            raise RemoteFailure(
                operation,
                f"{method} {path} returned HTTP {resp.status_code}: {detail}",
                transient=resp.status_code >= 500,
            )

        if not resp.content:
            return {}
        try:
            return resp.json()
        except ValueError as e:
            raise RemoteFailure(operation, f"invalid JSON in response: {e}", cause=e)

    @staticmethod
    def _fault_detail(resp: httpx.Response) -> str:
        try:
            body = resp.json()
        except ValueError:
            return resp.text[:200]
        if isinstance(body, dict):
            return body.get("detail") or body.get("reason") or str(body)
        return str(body)

    def _parse_attachment(self, operation: str, vm_id: str, data: dict) -> Attachment:
        disk_id = (data.get("disk") or {}).get("id")
        if not disk_id:
            raise RemoteFailure(operation, "unexpected attachment payload: missing disk id")
        try:
            return Attachment(
                id=data["id"],
                disk_id=disk_id,
                interface=DiskInterface.parse(data.get("interface")),
                vm_id=(data.get("vm") or {}).get("id", vm_id),
                bootable=_as_bool(data.get("bootable", False)),
                active=_as_bool(data.get("active", True)),
            )
        except (KeyError, ValueError) as e:
            raise RemoteFailure(operation, f"unexpected attachment payload: {e}", cause=e)

    @staticmethod
    def _parse_disk(data: dict) -> Disk:
        domains = (data.get("storage_domains") or {}).get("storage_domain") or []
        return Disk(
            id=data["id"],
            alias=data.get("alias", ""),
            format=ImageFormat.parse(data.get("format", "cow")),
            size=int(data.get("provisioned_size", 0)),
            shared=_as_bool(data.get("shareable", False)),
            status=DiskStatus(data.get("status", "ok")),
            storage_domain_id=domains[0].get("id") if domains else None,
        )

    # --- Hooks ---

    async def _list_attachments(self, vm_id: str) -> list[Attachment]:
        body = await self._request(
            "list_attachments", "GET", f"/vms/{vm_id}/diskattachments"
        )
        return [
            self._parse_attachment("list_attachments", vm_id, item)
            for item in body.get("disk_attachment", [])
        ]

    async def _get_attachment(self, vm_id: str, attachment_id: str) -> Attachment:
        body = await self._request(
            "get_attachment", "GET", f"/vms/{vm_id}/diskattachments/{attachment_id}"
        )
        return self._parse_attachment("get_attachment", vm_id, body)

    async def _create_attachment(
        self, vm_id: str, disk_id: str, interface: DiskInterface
    ) -> Attachment:
        body = await self._request(
            "create_attachment",
            "POST",
            f"/vms/{vm_id}/diskattachments",
            json={
                "disk": {"id": disk_id},
                "interface": interface.value,
                "active": True,
                "bootable": False,
            },
        )
        return self._parse_attachment("create_attachment", vm_id, body)

    async def _remove_attachment(self, vm_id: str, attachment_id: str) -> None:
        await self._request(
            "remove_attachment",
            "DELETE",
            f"/vms/{vm_id}/diskattachments/{attachment_id}",
            params={"detach_only": "true"},
        )

    async def _resolve_disk(self, attachment: Attachment) -> Disk:
        body = await self._request("resolve_disk", "GET", f"/disks/{attachment.disk_id}")
        try:
            return self._parse_disk(body)
        except (KeyError, ValueError) as e:
            raise RemoteFailure("resolve_disk", f"unexpected disk payload: {e}", cause=e)

    async def _delete_disk(self, disk: Disk) -> None:
        await self._request("delete_disk", "DELETE", f"/disks/{disk.id}")

