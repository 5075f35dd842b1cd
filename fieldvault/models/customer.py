"""
Customer document used by the bootstrap verification round trip.
"""
from typing import Any, Dict, Optional

from fieldvault.schemas.encryption import FieldSpec


CUSTOMER_FIELD_SPECS = (
    FieldSpec(path="ssn", bson_type="string", algorithm="deterministic"),
    FieldSpec(path="prescription", bson_type="string", algorithm="random"),
)


def create_customer_document(
    name: str = "Jon Doe",
    ssn: str = "123-45-6789",
    prescription: str = "Lipitor 20mg",
    email: Optional[str] = "jon.doe@example.com",
) -> Dict[str, Any]:
    """Build a customer document; ssn and prescription are protected fields."""
    document: Dict[str, Any] = {
        "name": name,
        "ssn": ssn,
        "prescription": prescription,
    }
    if email is not None:
        document["contact"] = {"email": email}
    return document
