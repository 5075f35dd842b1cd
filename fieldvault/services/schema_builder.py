"""
Automatic encryption schema builder.

Turns a key id and a list of field specs into the ``$jsonSchema`` document
the driver uses to encrypt and decrypt matching fields:

    {
        "bsonType": "object",
        "properties": {
            "ssn": {
                "encrypt": {
                    "keyId": [Binary(<uuid>, 4)],
                    "bsonType": "string",
                    "algorithm": "AEAD_AES_256_CBC_HMAC_SHA_512-Deterministic"
                }
            }
        }
    }

Adding a protected field only needs a new FieldSpec; vault and client
construction are unaffected.
"""
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Mapping, Tuple, Union

from bson.binary import UUID_SUBTYPE, Binary
from pydantic import ValidationError
from pymongo.encryption import Algorithm

from fieldvault.exceptions import SchemaBuildError
from fieldvault.schemas.encryption import FieldSpec


ALGORITHMS = {
    "deterministic": Algorithm.AEAD_AES_256_CBC_HMAC_SHA_512_Deterministic,
    "random": Algorithm.AEAD_AES_256_CBC_HMAC_SHA_512_Random,
}

SUPPORTED_BSON_TYPES = frozenset({
    "string", "int", "long", "double", "decimal", "bool", "date",
    "objectId", "binData", "array", "object", "regex", "javascript",
    "javascriptWithScope", "timestamp",
})

# Types libmongocrypt refuses to encrypt deterministically
RANDOM_ONLY_BSON_TYPES = frozenset({
    "double", "decimal", "bool", "object", "array", "javascriptWithScope",
})


@dataclass(frozen=True)
class EncryptionSchema:
    """
    Field path -> {algorithm, key id} bindings for one key.

    Attributes:
        key_id: DEK id every field is bound to
        fields: Field specs, sorted by path
    """

    key_id: Binary
    fields: Tuple[FieldSpec, ...]

    @property
    def protected_paths(self) -> Tuple[str, ...]:
        return tuple(spec.path for spec in self.fields)

    @property
    def deterministic_paths(self) -> Tuple[str, ...]:
        return tuple(spec.path for spec in self.fields if spec.algorithm == "deterministic")

    def to_json_schema(self) -> Dict[str, Any]:
        """Render the ``$jsonSchema`` document for automatic encryption."""
        root: Dict[str, Any] = {"bsonType": "object", "properties": {}}

        for spec in self.fields:
            node = root
            for segment in spec.segments[:-1]:
                node = node["properties"].setdefault(
                    segment, {"bsonType": "object", "properties": {}}
                )
            node["properties"][spec.segments[-1]] = {
                "encrypt": {
                    "keyId": [self.key_id],
                    "bsonType": spec.bson_type,
                    "algorithm": ALGORITHMS[spec.algorithm],
                }
            }

        return root

    def schema_map(self, namespace: str) -> Dict[str, Dict[str, Any]]:
        """Schema map for AutoEncryptionOpts, keyed by "<db>.<collection>"."""
        return {namespace: self.to_json_schema()}


def _parse_field_spec(raw: Union[FieldSpec, Mapping[str, Any]]) -> FieldSpec:
    if isinstance(raw, FieldSpec):
        return raw
    if not isinstance(raw, Mapping):
        raise SchemaBuildError(f"Field spec must be a FieldSpec or mapping, got {type(raw).__name__}")
    try:
        return FieldSpec.model_validate(dict(raw))
    except ValidationError as e:
        raise SchemaBuildError(f"Malformed field spec {dict(raw)!r}: {e}") from e


def _validate_field_spec(spec: FieldSpec) -> None:
    if not spec.path:
        raise SchemaBuildError("Field path cannot be empty")

    for segment in spec.segments:
        if not segment:
            raise SchemaBuildError(f"Field path has an empty segment: '{spec.path}'")
        if segment.startswith("$"):
            raise SchemaBuildError(f"Field path segment cannot start with '$': '{spec.path}'")

    if spec.segments[0] == "_id":
        raise SchemaBuildError("The _id field cannot be encrypted")

    if spec.bson_type not in SUPPORTED_BSON_TYPES:
        raise SchemaBuildError(f"Unknown BSON type '{spec.bson_type}' for '{spec.path}'")

    if spec.algorithm == "deterministic" and spec.bson_type in RANDOM_ONLY_BSON_TYPES:
        raise SchemaBuildError(
            f"BSON type '{spec.bson_type}' cannot be encrypted deterministically ('{spec.path}')"
        )


def build_schema(
    key_id: Binary,
    field_specs: Iterable[Union[FieldSpec, Mapping[str, Any]]],
) -> EncryptionSchema:
    """
    Build the encryption schema binding each field spec to a key id.

    Deterministic in its inputs: the same key id and field specs (in any
    order) produce equal schemas.

    Args:
        key_id: DEK id (UUID-subtype Binary)
        field_specs: FieldSpec instances or mappings with path, bson_type, algorithm

    Returns:
        EncryptionSchema

    Raises:
        SchemaBuildError: If the key id or any field spec is invalid
    """
    if not isinstance(key_id, Binary) or key_id.subtype != UUID_SUBTYPE or len(key_id) != 16:
        raise SchemaBuildError("Key id must be a 16-byte UUID-subtype Binary")

    specs = [_parse_field_spec(raw) for raw in field_specs]
    if not specs:
        raise SchemaBuildError("At least one field spec is required")

    seen: Dict[str, FieldSpec] = {}
    for spec in specs:
        _validate_field_spec(spec)
        if spec.path in seen:
            raise SchemaBuildError(f"Duplicate field path '{spec.path}'")
        seen[spec.path] = spec

    # An encrypted field cannot also be a parent of another encrypted field
    for path in seen:
        for other in seen:
            if other != path and other.startswith(path + "."):
                raise SchemaBuildError(
                    f"Field '{other}' is nested under encrypted field '{path}'"
                )

    return EncryptionSchema(
        key_id=key_id,
        fields=tuple(sorted(seen.values(), key=lambda spec: spec.path)),
    )
