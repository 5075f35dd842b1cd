"""
Pydantic schemas for field-level encryption policy.

A FieldSpec declares one sensitive field: where it lives in the document,
its BSON type, and whether it is encrypted deterministically (equality
queries possible) or randomly (no queries, stronger protection).
"""
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


EncryptionAlgorithmName = Literal["deterministic", "random"]


class FieldSpec(BaseModel):
    """Encryption policy for one field path."""

    path: str = Field(description="Dotted field path, e.g. 'ssn' or 'insurance.policyNumber'")
    bson_type: str = Field(description="BSON type of the plaintext value, e.g. 'string'")
    algorithm: EncryptionAlgorithmName = Field(
        default="random",
        description="'deterministic' allows equality queries; 'random' does not",
    )

    model_config = ConfigDict(frozen=True, extra="forbid")

    @property
    def segments(self) -> tuple:
        """Path split into its segments."""
        return tuple(self.path.split("."))
