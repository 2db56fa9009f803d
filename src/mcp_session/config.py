from pydantic import BaseModel, Field, field_validator

from .jsonrpc.codec import DEFAULT_MAX_MESSAGE_SIZE
from .types import SUPPORTED_PROTOCOL_VERSIONS


class SessionConfig(BaseModel):
    """Tunables shared by client and server sessions."""

    supported_protocol_versions: list[str] = Field(
        default_factory=lambda: list(SUPPORTED_PROTOCOL_VERSIONS)
    )
    """Protocol revisions to accept, preferred first."""

    request_timeout: float | None = Field(default=None, gt=0)
    """Seconds to wait for a response before cancelling. None waits forever."""

    shutdown_timeout: float = Field(default=5.0, ge=0)
    """Seconds `shutdown()` waits for in-flight requests before closing anyway."""

    page_size: int = Field(default=50, gt=0)
    """Items per page for list operations served by this side."""

    max_message_size: int = Field(default=DEFAULT_MAX_MESSAGE_SIZE, gt=0)

    @field_validator("supported_protocol_versions")
    @classmethod
    def _not_empty(cls, versions: list[str]) -> list[str]:
        if not versions:
            raise ValueError("At least one protocol version must be supported")
        return versions

    @property
    def preferred_protocol_version(self) -> str:
        return self.supported_protocol_versions[0]
