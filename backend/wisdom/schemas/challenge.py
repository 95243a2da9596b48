from pydantic import BaseModel, ConfigDict, Field

PROTOCOL_VERSION = "1"
ALGORITHM = "sha256"


class Challenge(BaseModel):
    """A PoW challenge as issued by the server and echoed on the wire."""

    model_config = ConfigDict(frozen=True)

    ver: str = PROTOCOL_VERSION
    alg: str = ALGORITHM
    bits: int = Field(..., ge=0, le=256, description="Required leading zero bits")
    ts: int = Field(..., description="Issuance time, Unix seconds")
    expires_in: int = Field(..., gt=0, description="Validity window in seconds")
    resource: str
    salt: str = Field(..., min_length=32, pattern=r"^[0-9a-f]+$")
