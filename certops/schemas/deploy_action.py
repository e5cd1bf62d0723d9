"""
Pydantic schemas for deployment actions.

Actions are a tagged union discriminated by ``type``. Adding a new target is
one variant here plus one handler in the deployment service.
"""

from typing import Optional, List, Dict, Any, Literal, Union, Annotated
from pydantic import Field, TypeAdapter, field_validator, model_validator
import uuid

from certops.schemas.base import CamelModel
from certops.schemas.connections import SmtpSettings

CertificateSource = Literal["cert", "key", "chain", "fullchain", "p12"]
HostKeyPolicy = Literal["strict", "accept-new", "insecure"]

ACTION_TYPES = (
    "copy",
    "ssh-copy",
    "smb-copy",
    "ftp-copy",
    "command",
    "docker-restart",
    "nginx-proxy-manager",
    "api-call",
    "webhook",
    "email",
)


def _parse_mode(v: Any) -> Optional[str]:
    if v is None or v == "":
        return None
    if isinstance(v, int):
        return format(v, "o")
    v = str(v).strip()
    try:
        int(v, 8)
    except ValueError:
        raise ValueError(f"Invalid octal file mode: {v}")
    return v


class DeployActionBase(CamelModel):
    """Fields common to every deployment action."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()), description="Stable action id")
    name: str = Field(default="", description="Display name")
    enabled: bool = Field(default=True, description="Disabled actions are skipped")
    timeout: Optional[float] = Field(default=None, gt=0, description="Per-action timeout in seconds")


class CopyAction(DeployActionBase):
    """Copy certificate material to a local path."""
    type: Literal["copy"] = "copy"
    source: CertificateSource = "cert"
    destination: str = Field(..., min_length=1)
    mode: Optional[str] = Field(default=None, description="Octal permission bits, e.g. 600")
    owner: Optional[str] = Field(default=None, description="User name or uid")
    group: Optional[str] = Field(default=None, description="Group name or gid")

    @field_validator("mode", mode="before")
    @classmethod
    def validate_mode(cls, v: Any) -> Optional[str]:
        return _parse_mode(v)


class SshCopyAction(DeployActionBase):
    """Upload certificate material over SFTP."""
    type: Literal["ssh-copy"] = "ssh-copy"
    host: str = Field(..., min_length=1)
    port: int = Field(default=22, ge=1, le=65535)
    username: Optional[str] = None
    password: Optional[str] = None
    private_key: Optional[str] = Field(default=None, description="Path to a private key file")
    passphrase: Optional[str] = None
    source: CertificateSource = "cert"
    destination: str = Field(..., min_length=1)
    mkdir: bool = True
    mode: Optional[str] = None
    uid: Optional[int] = None
    gid: Optional[int] = None
    host_key_policy: HostKeyPolicy = "strict"
    known_hosts_file: Optional[str] = None

    @field_validator("mode", mode="before")
    @classmethod
    def validate_mode(cls, v: Any) -> Optional[str]:
        return _parse_mode(v)


class SmbCopyAction(DeployActionBase):
    """Write certificate material to an SMB share."""
    type: Literal["smb-copy"] = "smb-copy"
    host: str = Field(..., min_length=1)
    port: int = Field(default=445, ge=1, le=65535)
    share: str = Field(..., min_length=1)
    domain: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    source: CertificateSource = "cert"
    destination: str = Field(..., min_length=1, description="Path inside the share")

    @field_validator("share", mode="before")
    @classmethod
    def strip_share(cls, v: str) -> str:
        return str(v).strip("\\/")


class FtpCopyAction(DeployActionBase):
    """Upload certificate material over FTP or explicit FTPS."""
    type: Literal["ftp-copy"] = "ftp-copy"
    host: str = Field(..., min_length=1)
    port: int = Field(default=21, ge=1, le=65535)
    username: str = "anonymous"
    password: str = "anonymous@example.com"
    secure: bool = False
    passive: bool = True
    source: CertificateSource = "cert"
    destination: str = Field(..., min_length=1)


class CommandAction(DeployActionBase):
    """Run a local shell command."""
    type: Literal["command"] = "command"
    command: str = Field(..., min_length=1)
    cwd: Optional[str] = None
    env: Dict[str, str] = Field(default_factory=dict)


class DockerRestartAction(DeployActionBase):
    """Restart a container and wait for it to report running."""
    type: Literal["docker-restart"] = "docker-restart"
    container_id: Optional[str] = None
    container_name: Optional[str] = None
    docker_host: Optional[str] = Field(default=None, description="e.g. unix:///var/run/docker.sock or tcp://host:2376")
    tls_ca_cert: Optional[str] = None
    tls_client_cert: Optional[str] = None
    tls_client_key: Optional[str] = None
    tls_verify: bool = True
    wait_seconds: int = Field(default=30, ge=1)

    @model_validator(mode="after")
    def require_container(self):
        if not self.container_id and not self.container_name:
            raise ValueError("docker-restart requires containerId or containerName")
        return self

    @property
    def container(self) -> str:
        # Names survive container re-creation, ids do not
        return self.container_name or self.container_id


class NginxProxyManagerAction(DeployActionBase):
    """Upload the certificate to Nginx Proxy Manager through its API."""
    type: Literal["nginx-proxy-manager"] = "nginx-proxy-manager"
    host: Optional[str] = None
    port: Optional[int] = Field(default=None, ge=1, le=65535)
    use_https: Optional[bool] = None
    username: Optional[str] = None
    password: Optional[str] = None
    certificate_name: Optional[str] = Field(default=None, description="nice_name in NPM, defaults to the certificate name")
    apply_to_hosts: List[int] = Field(default_factory=list, description="Proxy host ids to point at the certificate")


class HttpAuth(CamelModel):
    """Authentication for api-call actions."""
    bearer: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    api_key: Optional[str] = None
    api_key_header: str = "X-API-Key"


class ApiCallAction(DeployActionBase):
    """Call an HTTP API; success is a 2xx response."""
    type: Literal["api-call"] = "api-call"
    url: str = Field(..., min_length=1)
    method: str = "POST"
    headers: Dict[str, str] = Field(default_factory=dict)
    body: Optional[str] = Field(default=None, description="Body template with placeholders")
    content_type: str = "application/json"
    auth: Optional[HttpAuth] = None

    @field_validator("method", mode="before")
    @classmethod
    def upper_method(cls, v: str) -> str:
        return str(v).upper()


class WebhookAction(DeployActionBase):
    """Notify a webhook of a deployment."""
    type: Literal["webhook"] = "webhook"
    url: str = Field(..., min_length=1)
    method: str = "POST"
    headers: Dict[str, str] = Field(default_factory=dict)
    event: str = "certificate.deployed"
    body: Optional[str] = Field(default=None, description="Body template; replaces the default payload")
    custom_data: Optional[Dict[str, Any]] = None
    include_files: List[CertificateSource] = Field(default_factory=list)

    @field_validator("method", mode="before")
    @classmethod
    def upper_method(cls, v: str) -> str:
        return str(v).upper()


class EmailAction(DeployActionBase):
    """Send a notification email, optionally with the certificate attached."""
    type: Literal["email"] = "email"
    to: List[str] = Field(..., min_length=1)
    cc: List[str] = Field(default_factory=list)
    subject: Optional[str] = None
    body: Optional[str] = None
    attach_certificates: bool = False
    smtp: Optional[SmtpSettings] = None

    @field_validator("to", "cc", mode="before")
    @classmethod
    def split_recipients(cls, v: Any) -> Any:
        if isinstance(v, str):
            return [r.strip() for r in v.split(",") if r.strip()]
        return v


DeployAction = Annotated[
    Union[
        CopyAction,
        SshCopyAction,
        SmbCopyAction,
        FtpCopyAction,
        CommandAction,
        DockerRestartAction,
        NginxProxyManagerAction,
        ApiCallAction,
        WebhookAction,
        EmailAction,
    ],
    Field(discriminator="type"),
]

deploy_action_adapter = TypeAdapter(DeployAction)


def parse_deploy_action(data: Dict[str, Any]) -> DeployAction:
    """Validate a raw action record into its typed variant."""
    return deploy_action_adapter.validate_python(data)
