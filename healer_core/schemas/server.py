from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class ServerConnectionInfo(BaseModel):
    """
    Connection parameters returned by the server credential provider.
    Credentials stay encrypted; only the execution layer decrypts them.
    """
    model_config = ConfigDict(from_attributes=True)

    server_id: str
    hostname: str
    port: int = 22
    username: str
    auth_type: Literal["password", "key"] = "key"
    encrypted_credentials: str = Field(repr=False)
    host_key_fingerprint: Optional[str] = None
