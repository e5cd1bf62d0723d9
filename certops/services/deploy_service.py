"""
Deployment service - runs a certificate's deploy actions in order.

Every action is attempted even when an earlier one failed; each produces one
ActionResult and the run is summarised in a DeployResult. Action failures
never propagate out of deploy().
"""

import asyncio
import ftplib
import io
import json
import os
import posixpath
import re
import shlex
import shutil
import smtplib
import ssl
import time
from datetime import datetime, timedelta, timezone
from email.message import EmailMessage
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

import docker
import httpx
import paramiko
import smbclient
import structlog
from docker.errors import DockerException, NotFound
from docker.tls import TLSConfig
from smbprotocol.exceptions import SMBException

from certops.core.exceptions import DeployError, NotFoundError, StorageError
from certops.core.storage import Clock, atomic_write, utc_now
from certops.models.certificate import Certificate, Encoding
from certops.schemas.base import merge_model
from certops.schemas.connections import NginxProxyManagerSettings, SmtpSettings
from certops.schemas.deploy_action import (
    ApiCallAction,
    CommandAction,
    CopyAction,
    DeployAction,
    DockerRestartAction,
    EmailAction,
    FtpCopyAction,
    NginxProxyManagerAction,
    SmbCopyAction,
    SshCopyAction,
    WebhookAction,
    parse_deploy_action,
)
from certops.schemas.deploy_result import ActionResult, DeployResult
from certops.services.activity_service import ActivityService
from certops.services.config_store import ConfigStore
from certops.services.crypto_service import CryptoService
from certops.services.file_store import CertificateFileStore
from certops.services.registry import CertificateRegistry

logger = structlog.get_logger()

PLACEHOLDER = re.compile(r"\{\{\s*([A-Za-z]+)\s*\}\}")

HTTP_ACTIONS = ("api-call", "webhook", "nginx-proxy-manager")
TRANSFER_ACTIONS = ("ssh-copy", "smb-copy", "ftp-copy")

NPM_TOKEN_LIFETIME = timedelta(hours=24)

DockerClientFactory = Callable[[DockerRestartAction], Any]
SmtpFactory = Callable[[SmtpSettings, float], Any]
ActionHandler = Callable[[Any, Certificate], Awaitable[str]]


def render_template(template: str, values: Dict[str, str], quote: Optional[Callable[[str], str]] = None) -> str:
    """Replace {{placeholder}} occurrences; unknown placeholders are left intact."""

    def substitute(match: "re.Match[str]") -> str:
        key = match.group(1)
        if key not in values:
            return match.group(0)
        value = values[key]
        return quote(value) if quote else value

    return PLACEHOLDER.sub(substitute, template)


def _json_string_quote(value: str) -> str:
    return json.dumps(value)[1:-1]


def default_docker_client(action: DockerRestartAction, default_host: Optional[str] = None):
    base_url = action.docker_host or default_host
    if not base_url:
        return docker.from_env()
    tls: Union[TLSConfig, bool] = False
    if action.tls_client_cert or action.tls_ca_cert:
        client_cert = None
        if action.tls_client_cert and action.tls_client_key:
            client_cert = (action.tls_client_cert, action.tls_client_key)
        tls = TLSConfig(
            client_cert=client_cert,
            ca_cert=action.tls_ca_cert,
            verify=action.tls_verify,
        )
    return docker.DockerClient(base_url=base_url, tls=tls)


def default_smtp_factory(settings: SmtpSettings, timeout: float) -> smtplib.SMTP:
    context = ssl.create_default_context()
    if not settings.reject_unauthorized:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
    if settings.secure:
        return smtplib.SMTP_SSL(settings.host, settings.port, timeout=timeout, context=context)
    server = smtplib.SMTP(settings.host, settings.port, timeout=timeout)
    server.ehlo()
    if server.has_extn("starttls"):
        server.starttls(context=context)
        server.ehlo()
    return server


class DeployService:
    """Executes deploy actions and maintains each certificate's action list."""

    def __init__(
        self,
        crypto: CryptoService,
        registry: CertificateRegistry,
        config_store: ConfigStore,
        file_store: CertificateFileStore,
        activity: ActivityService,
        clock: Optional[Clock] = None,
        default_timeout: float = 60.0,
        http_timeout: float = 30.0,
        transfer_timeout: float = 120.0,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
        docker_client_factory: Optional[DockerClientFactory] = None,
        smtp_factory: Optional[SmtpFactory] = None,
        ssh_client_factory: Callable[[], paramiko.SSHClient] = paramiko.SSHClient,
        docker_host: Optional[str] = None,
    ):
        self.crypto = crypto
        self.registry = registry
        self.config_store = config_store
        self.file_store = file_store
        self.activity = activity
        self.clock = clock or utc_now
        self.default_timeout = default_timeout
        self.http_timeout = http_timeout
        self.transfer_timeout = transfer_timeout
        self.http_transport = http_transport
        self.docker_client_factory = docker_client_factory or (
            lambda action: default_docker_client(action, docker_host)
        )
        self.smtp_factory = smtp_factory or default_smtp_factory
        self.ssh_client_factory = ssh_client_factory

        # endpoint -> (token, expiry)
        self._npm_tokens: Dict[str, Tuple[str, datetime]] = {}

        self._handlers: Dict[str, ActionHandler] = {
            "copy": self._deploy_copy,
            "ssh-copy": self._deploy_ssh_copy,
            "smb-copy": self._deploy_smb_copy,
            "ftp-copy": self._deploy_ftp_copy,
            "command": self._deploy_command,
            "docker-restart": self._deploy_docker_restart,
            "nginx-proxy-manager": self._deploy_nginx_proxy_manager,
            "api-call": self._deploy_api_call,
            "webhook": self._deploy_webhook,
            "email": self._deploy_email,
        }

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    @property
    def handled_types(self) -> List[str]:
        return list(self._handlers)

    def timeout_for(self, action: DeployAction) -> float:
        if action.timeout:
            return action.timeout
        if action.type in HTTP_ACTIONS:
            return self.http_timeout
        if action.type in TRANSFER_ACTIONS:
            return self.transfer_timeout
        return self.default_timeout

    async def deploy(self, fingerprint: str, action_ids: Optional[List[str]] = None) -> DeployResult:
        """
        Run the enabled deploy actions of a certificate in order.

        Args:
            fingerprint: Certificate to deploy
            action_ids: Restrict the run to these actions

        Returns:
            Aggregate result with one row per executed action

        Raises:
            NotFoundError: Unknown fingerprint
        """
        cert = self.registry.get(fingerprint)
        result = DeployResult()

        for index, action in enumerate(cert.deploy_actions):
            if not action.enabled:
                continue
            if action_ids is not None and action.id not in action_ids:
                continue
            row = await self._run_action(index, action, cert)
            result.results.append(row)
            result.executed += 1
            if row.success:
                result.succeeded += 1

        if result.executed:
            logger.info(
                "Deployment finished",
                fingerprint=cert.fingerprint,
                executed=result.executed,
                succeeded=result.succeeded,
            )
            await self.activity.record_certificate_activity(
                "deploy" if result.success else "deploy-failed",
                cert,
                {
                    "executed": result.executed,
                    "succeeded": result.succeeded,
                    "results": [r.to_json_dict() for r in result.results],
                },
            )
        return result

    async def _run_action(self, index: int, action: DeployAction, cert: Certificate) -> ActionResult:
        handler = self._handlers[action.type]
        timeout = self.timeout_for(action)
        started = time.monotonic()
        log = logger.bind(fingerprint=cert.fingerprint, action_type=action.type, action_id=action.id)
        log.debug("Running deploy action", index=index, timeout=timeout)

        try:
            message = await asyncio.wait_for(handler(action, cert), timeout)
            success = True
        except asyncio.TimeoutError:
            message = f"Timed out after {timeout:g}s"
            success = False
        except DeployError as e:
            message = e.message
            success = False
        except Exception as e:
            # Every failure becomes a result row
            message = str(e) or type(e).__name__
            success = False

        duration_ms = int((time.monotonic() - started) * 1000)
        if success:
            log.info("Deploy action succeeded", message=message, duration_ms=duration_ms)
        else:
            log.warning("Deploy action failed", error=message, duration_ms=duration_ms)

        return ActionResult(
            index=index,
            id=action.id,
            type=action.type,
            name=action.name,
            success=success,
            message=message,
            duration_ms=duration_ms,
        )

    # ------------------------------------------------------------------
    # Certificate material
    # ------------------------------------------------------------------

    def placeholder_values(self, cert: Certificate) -> Dict[str, str]:
        return {
            "cert": cert.cert_path,
            "key": cert.key_path or "",
            "chain": cert.chain_path or "",
            "fullchain": cert.fullchain_path or "",
            "p12": cert.p12_path or "",
            "fingerprint": cert.fingerprint,
            "name": cert.display_name,
            "commonName": cert.common_name or "",
            "validTo": cert.valid_to.isoformat(),
        }

    async def _cert_pem(self, cert: Certificate) -> bytes:
        data = await self.file_store.read(cert.cert_path)
        if cert.original_encoding == Encoding.DER:
            return self.crypto.der_to_pem(data)
        return data

    async def read_source(self, cert: Certificate, source: str, action_type: str) -> bytes:
        """
        Bytes of one kind of certificate material.

        Raises:
            DeployError: The certificate has no such material
        """
        try:
            if source == "cert":
                return await self.file_store.read(cert.cert_path)
            if source == "fullchain":
                if cert.fullchain_path:
                    return await self.file_store.read(cert.fullchain_path)
                pem = await self._cert_pem(cert)
                if cert.chain_path:
                    pem = pem.rstrip(b"\n") + b"\n" + await self.file_store.read(cert.chain_path)
                return pem
            path = {"key": cert.key_path, "chain": cert.chain_path, "p12": cert.p12_path}.get(source)
            if not path:
                raise DeployError(action_type, f"Certificate has no {source} file")
            return await self.file_store.read(path)
        except StorageError as e:
            raise DeployError(action_type, str(e)) from e

    # ------------------------------------------------------------------
    # File transfer handlers
    # ------------------------------------------------------------------

    async def _deploy_copy(self, action: CopyAction, cert: Certificate) -> str:
        data = await self.read_source(cert, action.source, action.type)
        destination = os.path.abspath(render_template(action.destination, self.placeholder_values(cert)))
        self.file_store.ignore([destination])
        mode = int(action.mode, 8) if action.mode else None
        await asyncio.to_thread(self._copy_file, action, data, destination, mode)
        return f"Copied {action.source} to {destination}"

    @staticmethod
    def _copy_file(action: CopyAction, data: bytes, destination: str, mode: Optional[int]) -> None:
        try:
            os.makedirs(os.path.dirname(destination), exist_ok=True)
            atomic_write(destination, data, mode=mode)
            if action.owner or action.group:
                shutil.chown(destination, user=action.owner, group=action.group)
        except (OSError, LookupError, StorageError) as e:
            raise DeployError(action.type, f"Failed to copy to {destination}: {e}") from e

    async def _deploy_ssh_copy(self, action: SshCopyAction, cert: Certificate) -> str:
        data = await self.read_source(cert, action.source, action.type)
        destination = render_template(action.destination, self.placeholder_values(cert))
        timeout = self.timeout_for(action)
        await asyncio.to_thread(self._ssh_copy, action, data, destination, timeout)
        return f"Uploaded {action.source} to {action.host}:{destination}"

    def _ssh_copy(self, action: SshCopyAction, data: bytes, destination: str, timeout: float) -> None:
        client = self.ssh_client_factory()
        try:
            if action.host_key_policy != "insecure":
                client.load_system_host_keys()
                if action.known_hosts_file and os.path.exists(action.known_hosts_file):
                    client.load_host_keys(action.known_hosts_file)
            if action.host_key_policy == "strict":
                client.set_missing_host_key_policy(paramiko.RejectPolicy())
            else:
                client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

            client.connect(
                hostname=action.host,
                port=action.port,
                username=action.username,
                password=action.password,
                key_filename=action.private_key,
                passphrase=action.passphrase,
                timeout=timeout,
                allow_agent=False,
                look_for_keys=False,
            )
            if action.host_key_policy == "accept-new" and action.known_hosts_file:
                client.save_host_keys(action.known_hosts_file)

            sftp = client.open_sftp()
            try:
                if action.mkdir:
                    _sftp_makedirs(sftp, posixpath.dirname(destination))
                sftp.putfo(io.BytesIO(data), destination)
                if action.mode:
                    sftp.chmod(destination, int(action.mode, 8))
                if action.uid is not None or action.gid is not None:
                    attrs = sftp.stat(destination)
                    uid = action.uid if action.uid is not None else attrs.st_uid
                    gid = action.gid if action.gid is not None else attrs.st_gid
                    sftp.chown(destination, uid, gid)
            finally:
                sftp.close()
        except (paramiko.SSHException, OSError) as e:
            raise DeployError(action.type, f"SFTP upload to {action.host} failed: {e}") from e
        finally:
            client.close()

    async def _deploy_smb_copy(self, action: SmbCopyAction, cert: Certificate) -> str:
        data = await self.read_source(cert, action.source, action.type)
        destination = render_template(action.destination, self.placeholder_values(cert))
        timeout = self.timeout_for(action)
        remote = await asyncio.to_thread(self._smb_copy, action, data, destination, timeout)
        return f"Copied {action.source} to {remote}"

    @staticmethod
    def _smb_copy(action: SmbCopyAction, data: bytes, destination: str, timeout: float) -> str:
        username = action.username
        if username and action.domain:
            username = f"{action.domain}\\{username}"
        session = dict(username=username, password=action.password, port=action.port, connection_timeout=int(timeout))
        relative = destination.replace("/", "\\").strip("\\")
        remote = f"\\\\{action.host}\\{action.share}\\{relative}"
        try:
            parent = remote.rsplit("\\", 1)[0]
            if relative.count("\\"):
                smbclient.makedirs(parent, exist_ok=True, **session)
            with smbclient.open_file(remote, mode="wb", **session) as f:
                f.write(data)
        except (SMBException, OSError, ValueError) as e:
            raise DeployError(action.type, f"SMB copy to {remote} failed: {e}") from e
        return remote

    async def _deploy_ftp_copy(self, action: FtpCopyAction, cert: Certificate) -> str:
        data = await self.read_source(cert, action.source, action.type)
        destination = render_template(action.destination, self.placeholder_values(cert))
        timeout = self.timeout_for(action)
        await asyncio.to_thread(self._ftp_copy, action, data, destination, timeout)
        return f"Uploaded {action.source} to ftp://{action.host}{'' if destination.startswith('/') else '/'}{destination}"

    @staticmethod
    def _ftp_copy(action: FtpCopyAction, data: bytes, destination: str, timeout: float) -> None:
        ftp = ftplib.FTP_TLS(timeout=timeout) if action.secure else ftplib.FTP(timeout=timeout)
        try:
            ftp.connect(action.host, action.port)
            ftp.login(action.username, action.password)
            if action.secure:
                ftp.prot_p()
            ftp.set_pasv(action.passive)

            directory = posixpath.dirname(destination)
            if directory and directory != "/":
                path = "/" if destination.startswith("/") else ""
                for part in directory.strip("/").split("/"):
                    path = posixpath.join(path, part)
                    try:
                        ftp.mkd(path)
                    except ftplib.error_perm:
                        # Already exists
                        pass

            ftp.storbinary(f"STOR {destination}", io.BytesIO(data))
            ftp.quit()
        except ftplib.all_errors as e:
            raise DeployError(action.type, f"FTP upload to {action.host} failed: {e}") from e
        finally:
            ftp.close()

    # ------------------------------------------------------------------
    # Local command and container handlers
    # ------------------------------------------------------------------

    async def _deploy_command(self, action: CommandAction, cert: Certificate) -> str:
        command = render_template(action.command, self.placeholder_values(cert), quote=shlex.quote)
        env = dict(os.environ)
        env.update(action.env)

        process = await asyncio.create_subprocess_shell(
            command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=action.cwd,
            env=env,
        )
        try:
            stdout, stderr = await process.communicate()
        except asyncio.CancelledError:
            process.kill()
            await process.wait()
            raise

        out = stdout.decode("utf-8", "replace").strip()
        err = stderr.decode("utf-8", "replace").strip()
        if process.returncode != 0:
            detail = err or out
            raise DeployError(
                action.type,
                f"Command exited with code {process.returncode}" + (f": {detail[-500:]}" if detail else ""),
            )
        return out[-500:] if out else "Command completed"

    async def _deploy_docker_restart(self, action: DockerRestartAction, cert: Certificate) -> str:
        await asyncio.to_thread(self._docker_restart, action, self.timeout_for(action))
        return f"Container {action.container} restarted and running"

    def _docker_restart(self, action: DockerRestartAction, timeout: float) -> None:
        # Polling ends at whichever comes first, waitSeconds or the action timeout
        started = time.monotonic()
        deadline = started + min(action.wait_seconds, timeout)
        try:
            client = self.docker_client_factory(action)
        except DockerException as e:
            raise DeployError(action.type, f"Cannot connect to Docker: {e}") from e
        try:
            container = client.containers.get(action.container)
            container.restart()
            while True:
                container.reload()
                if container.status == "running":
                    return
                if time.monotonic() >= deadline:
                    raise DeployError(
                        action.type,
                        f"Container {action.container} is {container.status} after {time.monotonic() - started:.0f}s",
                    )
                time.sleep(min(1.0, max(0.0, deadline - time.monotonic())))
        except NotFound as e:
            raise DeployError(action.type, f"Container not found: {action.container}") from e
        except DockerException as e:
            raise DeployError(action.type, f"Docker error: {e}") from e
        finally:
            client.close()

    # ------------------------------------------------------------------
    # HTTP handlers
    # ------------------------------------------------------------------

    def _http_client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self.http_transport, timeout=timeout)

    async def _deploy_api_call(self, action: ApiCallAction, cert: Certificate) -> str:
        values = self.placeholder_values(cert)
        url = render_template(action.url, values)
        headers = {k: render_template(v, values) for k, v in action.headers.items()}
        content = None
        if action.body is not None:
            quote = _json_string_quote if "json" in action.content_type.lower() else None
            content = render_template(action.body, values, quote=quote)
            if not any(k.lower() == "content-type" for k in headers):
                headers["Content-Type"] = action.content_type

        auth = None
        if action.auth is not None:
            if action.auth.bearer:
                headers["Authorization"] = f"Bearer {action.auth.bearer}"
            elif action.auth.username:
                auth = httpx.BasicAuth(action.auth.username, action.auth.password or "")
            if action.auth.api_key:
                headers[action.auth.api_key_header] = action.auth.api_key

        async with self._http_client(self.timeout_for(action)) as client:
            response = await self._request(client, action.type, action.method, url, headers=headers, content=content, auth=auth)
        return f"{action.method} {url} returned HTTP {response.status_code}"

    async def _request(self, client: httpx.AsyncClient, action_type: str, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            response = await client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise DeployError(action_type, f"{method} {url} failed: {e}") from e
        if not response.is_success:
            raise DeployError(action_type, f"{method} {url} returned HTTP {response.status_code}: {response.text[:200]}")
        return response

    async def webhook_payload(self, action: WebhookAction, cert: Certificate) -> Dict[str, Any]:
        now = self.clock()
        payload: Dict[str, Any] = {
            "event": action.event,
            "timestamp": now.isoformat(),
            "certificate": {
                "name": cert.display_name,
                "fingerprint": cert.fingerprint,
                "subject": cert.subject,
                "issuer": cert.issuer,
                "validFrom": cert.valid_from.isoformat(),
                "validTo": cert.valid_to.isoformat(),
                "domains": cert.sans.domains,
                "ips": cert.sans.ips,
                "isExpired": cert.is_expired(now),
                "daysUntilExpiry": cert.days_until_expiry(now),
            },
        }
        if action.custom_data is not None:
            payload["customData"] = action.custom_data
        if action.include_files:
            files = {}
            for source in action.include_files:
                try:
                    files[source] = (await self.read_source(cert, source, action.type)).decode("utf-8", "replace")
                except DeployError as e:
                    logger.warning("Webhook file not included", fingerprint=cert.fingerprint, source=source, error=e.message)
            if files:
                payload["files"] = files
        return payload

    async def _deploy_webhook(self, action: WebhookAction, cert: Certificate) -> str:
        values = self.placeholder_values(cert)
        url = render_template(action.url, values)
        headers = {"Content-Type": "application/json"}
        headers.update({k: render_template(v, values) for k, v in action.headers.items()})

        if action.body is not None:
            kwargs = {"content": render_template(action.body, values, quote=_json_string_quote)}
        else:
            kwargs = {"json": await self.webhook_payload(action, cert)}

        async with self._http_client(self.timeout_for(action)) as client:
            response = await self._request(client, action.type, action.method, url, headers=headers, **kwargs)
        return f"Webhook {action.event} delivered (HTTP {response.status_code})"

    async def _npm_settings(self, action: NginxProxyManagerAction) -> Tuple[NginxProxyManagerSettings, bool]:
        """Effective connection settings and whether they come from the global defaults."""
        defaults = (await self.config_store.get_global_defaults()).deployment.nginx_proxy_manager
        if not action.host:
            return defaults, True
        settings = NginxProxyManagerSettings(
            host=action.host,
            port=action.port or defaults.port,
            use_https=action.use_https if action.use_https is not None else defaults.use_https,
            username=action.username or defaults.username,
            password=action.password or defaults.password,
        )
        return settings, False

    async def _npm_token(
        self,
        client: httpx.AsyncClient,
        base_url: str,
        settings: NginxProxyManagerSettings,
        use_global: bool,
        force_login: bool = False,
    ) -> str:
        now = self.clock()
        if not force_login:
            cached = self._npm_tokens.get(base_url)
            if cached and cached[1] > now:
                return cached[0]
            if use_global and settings.access_token and settings.token_expiry:
                expiry = _parse_expiry(settings.token_expiry)
                if expiry is not None and expiry > now:
                    self._npm_tokens[base_url] = (settings.access_token, expiry)
                    return settings.access_token

        if not settings.username or not settings.password:
            raise DeployError("nginx-proxy-manager", "Nginx Proxy Manager username and password are required for login")

        response = await self._request(
            client,
            "nginx-proxy-manager",
            "POST",
            f"{base_url}/tokens",
            json={"identity": settings.username, "secret": settings.password},
        )
        body = response.json()
        token = body.get("token")
        if not token:
            raise DeployError("nginx-proxy-manager", "Failed to authenticate with Nginx Proxy Manager")
        expiry = _parse_expiry(body.get("expires")) or now + NPM_TOKEN_LIFETIME
        self._npm_tokens[base_url] = (token, expiry)
        logger.debug("Obtained Nginx Proxy Manager token", endpoint=base_url, expires=expiry.isoformat())

        if use_global:
            await self.config_store.update_global_defaults(
                {"deployment": {"nginx_proxy_manager": {"access_token": token, "token_expiry": expiry.isoformat()}}}
            )
        return token

    async def _deploy_nginx_proxy_manager(self, action: NginxProxyManagerAction, cert: Certificate) -> str:
        settings, use_global = await self._npm_settings(action)
        if not settings.host:
            raise DeployError(action.type, "Nginx Proxy Manager host is not configured")
        if not cert.key_path:
            raise DeployError(action.type, "Certificate has no private key to upload")

        scheme = "https" if settings.use_https else "http"
        base_url = f"{scheme}://{settings.host}:{settings.port}/api"
        nice_name = action.certificate_name or cert.display_name

        certificate_pem = await self._cert_pem(cert)
        key_pem = await self.read_source(cert, "key", action.type)
        chain_pem = await self.read_source(cert, "chain", action.type) if cert.chain_path else None

        async with self._http_client(self.timeout_for(action)) as client:
            token = await self._npm_token(client, base_url, settings, use_global)
            try:
                response = await client.get(
                    f"{base_url}/nginx/certificates", headers={"Authorization": f"Bearer {token}"}
                )
            except httpx.HTTPError as e:
                raise DeployError(action.type, f"GET {base_url}/nginx/certificates failed: {e}") from e
            if response.status_code == 401:
                self._npm_tokens.pop(base_url, None)
                token = await self._npm_token(client, base_url, settings, use_global, force_login=True)
                response = await self._request(
                    client, action.type, "GET", f"{base_url}/nginx/certificates",
                    headers={"Authorization": f"Bearer {token}"},
                )
            elif not response.is_success:
                raise DeployError(action.type, f"Listing certificates returned HTTP {response.status_code}")

            headers = {"Authorization": f"Bearer {token}"}
            existing = next((c for c in response.json() if c.get("nice_name") == nice_name), None)
            if existing is None:
                created = await self._request(
                    client, action.type, "POST", f"{base_url}/nginx/certificates",
                    headers=headers, json={"nice_name": nice_name, "provider": "other"},
                )
                certificate_id = created.json()["id"]
            else:
                certificate_id = existing["id"]

            files = {
                "certificate": ("cert.pem", certificate_pem, "application/x-pem-file"),
                "certificate_key": ("key.pem", key_pem, "application/x-pem-file"),
            }
            if chain_pem:
                files["intermediate_certificate"] = ("chain.pem", chain_pem, "application/x-pem-file")
            await self._request(
                client, action.type, "POST", f"{base_url}/nginx/certificates/{certificate_id}/upload",
                headers=headers, files=files,
            )

            for host_id in action.apply_to_hosts:
                await self._request(
                    client, action.type, "PUT", f"{base_url}/nginx/proxy-hosts/{host_id}",
                    headers=headers, json={"certificate_id": certificate_id, "ssl_forced": True},
                )

        verb = "updated" if existing is not None else "created"
        return f"Certificate {verb} in Nginx Proxy Manager (id {certificate_id})"

    # ------------------------------------------------------------------
    # Email
    # ------------------------------------------------------------------

    async def _deploy_email(self, action: EmailAction, cert: Certificate) -> str:
        smtp = action.smtp or (await self.config_store.get_global_defaults()).deployment.email.smtp
        if not smtp.host:
            raise DeployError(action.type, "SMTP host is not configured")

        values = self.placeholder_values(cert)
        message = EmailMessage()
        message["Subject"] = render_template(action.subject or "Certificate deployed: {{name}}", values)
        message["From"] = smtp.from_address or smtp.user or f"certops@{smtp.host}"
        message["To"] = ", ".join(action.to)
        if action.cc:
            message["Cc"] = ", ".join(action.cc)
        message.set_content(
            render_template(
                action.body
                or "Certificate {{name}} ({{commonName}}) has been deployed.\n\n"
                   "Fingerprint: {{fingerprint}}\nValid until: {{validTo}}\n",
                values,
            )
        )

        if action.attach_certificates:
            for source, path in (("cert", cert.cert_path), ("chain", cert.chain_path)):
                if not path:
                    continue
                data = await self.read_source(cert, source, action.type)
                message.add_attachment(
                    data, maintype="application", subtype="x-pem-file", filename=os.path.basename(path)
                )

        await asyncio.to_thread(self._send_email, action, smtp, message)
        return f"Email sent to {', '.join(action.to + action.cc)}"

    def _send_email(self, action: EmailAction, smtp: SmtpSettings, message: EmailMessage) -> None:
        try:
            with self.smtp_factory(smtp, self.timeout_for(action)) as server:
                if smtp.user:
                    server.login(smtp.user, smtp.password or "")
                server.send_message(message)
        except (smtplib.SMTPException, OSError) as e:
            raise DeployError(action.type, f"SMTP delivery via {smtp.host} failed: {e}") from e

    # ------------------------------------------------------------------
    # Action maintenance
    # ------------------------------------------------------------------

    @staticmethod
    def _find_action(actions: List[DeployAction], ref: Union[str, int]) -> int:
        if isinstance(ref, int):
            if 0 <= ref < len(actions):
                return ref
        else:
            for index, action in enumerate(actions):
                if action.id == ref:
                    return index
        raise NotFoundError(f"Deploy action not found: {ref}")

    async def list_actions(self, fingerprint: str) -> List[DeployAction]:
        return self.registry.get(fingerprint).deploy_actions

    async def add_action(self, fingerprint: str, action: Union[DeployAction, Dict[str, Any]]) -> DeployAction:
        """
        Append an action; a fresh id is assigned when none is given.

        Raises:
            ValueError: Invalid action record or duplicate id
        """
        if isinstance(action, dict):
            action = parse_deploy_action(action)

        def edit(actions: List[DeployAction]):
            if any(a.id == action.id for a in actions):
                raise ValueError(f"Deploy action id already in use: {action.id}")
            return actions + [action], len(actions)

        actions, index = await self.registry.edit_deploy_actions(fingerprint, edit)
        logger.info("Deploy action added", fingerprint=fingerprint, action_type=action.type, action_id=action.id)
        return actions[index]

    async def update_action(self, fingerprint: str, ref: Union[str, int], patch: Dict[str, Any]) -> DeployAction:
        """Patch an action in place; its id never changes."""
        patch = {k: v for k, v in patch.items() if k != "id"}

        def edit(actions: List[DeployAction]):
            index = self._find_action(actions, ref)
            current = actions[index]
            if patch.get("type", current.type) != current.type:
                actions[index] = parse_deploy_action({**patch, "id": current.id})
            else:
                actions[index] = merge_model(current, patch)
            return actions, index

        actions, index = await self.registry.edit_deploy_actions(fingerprint, edit)
        return actions[index]

    async def delete_action(self, fingerprint: str, ref: Union[str, int]) -> DeployAction:
        def edit(actions: List[DeployAction]):
            removed = actions.pop(self._find_action(actions, ref))
            return actions, removed

        _, removed = await self.registry.edit_deploy_actions(fingerprint, edit)
        logger.info("Deploy action deleted", fingerprint=fingerprint, action_id=removed.id)
        return removed

    async def reorder_actions(self, fingerprint: str, order: List[int]) -> List[DeployAction]:
        """
        Rearrange actions; order[i] is the current index of the action that
        moves to position i.

        Raises:
            ValueError: order is not a permutation of the current indices
        """

        def edit(actions: List[DeployAction]):
            if len(order) != len(actions) or sorted(order) != list(range(len(actions))):
                raise ValueError(f"Order must be a permutation of 0..{len(actions) - 1}")
            return [actions[i] for i in order], None

        actions, _ = await self.registry.edit_deploy_actions(fingerprint, edit)
        return actions

    async def toggle_action(self, fingerprint: str, ref: Union[str, int], enabled: Optional[bool] = None) -> DeployAction:
        def edit(actions: List[DeployAction]):
            index = self._find_action(actions, ref)
            value = (not actions[index].enabled) if enabled is None else enabled
            actions[index] = actions[index].model_copy(update={"enabled": value})
            return actions, index

        actions, index = await self.registry.edit_deploy_actions(fingerprint, edit)
        return actions[index]


def _parse_expiry(value: Any) -> Optional[datetime]:
    if not value:
        return None
    try:
        expiry = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if expiry.tzinfo is None:
        expiry = expiry.replace(tzinfo=timezone.utc)
    return expiry


def _sftp_makedirs(sftp: paramiko.SFTPClient, directory: str) -> None:
    if not directory or directory in ("/", "."):
        return
    try:
        sftp.stat(directory)
        return
    except IOError:
        pass
    _sftp_makedirs(sftp, posixpath.dirname(directory))
    sftp.mkdir(directory)
