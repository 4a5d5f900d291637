"""Namespace and vector id helpers

A namespace partitions incomparable vector spaces:
``{provider}:{model}:v{schema}:{dimension}``. Vector ids are
``{namespace}::{path}#{chunk_id}``.
"""

from typing import NamedTuple

EMBEDDING_SCHEMA_VERSION = 2


class NamespaceParts(NamedTuple):
    provider: str
    model: str
    schema_version: int
    dimension: int | None


def normalize_model_for_namespace(model: str | None) -> str:
    """Trim model ids so cosmetic whitespace never forks a namespace"""
    cleaned = (model or "").strip()
    return cleaned or "unknown"


def build_namespace_prefix(provider_id: str, model: str | None) -> str:
    return f"{provider_id}:{normalize_model_for_namespace(model)}:"


def build_namespace(
    provider_id: str,
    model: str | None,
    dimension: int,
    schema_version: int = EMBEDDING_SCHEMA_VERSION,
) -> str:
    return f"{build_namespace_prefix(provider_id, model)}v{schema_version}:{dimension}"


def parse_namespace(namespace: str | None) -> NamespaceParts | None:
    """
    Split a namespace into its components

    Model ids may themselves contain ':' (e.g. 'nomic-embed-text:latest'), so the
    provider is taken from the left and schema/dimension from the right.

    Returns:
        NamespaceParts or None if the string is not a namespace
    """
    if not namespace:
        return None
    parts = namespace.split(":")
    if len(parts) < 4:
        return None

    provider = parts[0]
    schema_part = parts[-2]
    dimension_part = parts[-1]
    model = ":".join(parts[1:-2])
    if not provider or not model or not schema_part.startswith("v"):
        return None

    try:
        schema_version = int(schema_part[1:])
    except ValueError:
        return None

    dimension: int | None
    try:
        dimension = int(dimension_part)
    except ValueError:
        dimension = None

    return NamespaceParts(provider, model, schema_version, dimension)


def namespace_matches_current_version(
    namespace: str | None,
    provider_id: str,
    model: str | None,
    expected_dimension: int | None = None,
) -> bool:
    """Check a stored namespace against the active provider/model/schema (and dimension)"""
    parsed = parse_namespace(namespace)
    if parsed is None:
        return False
    if parsed.provider != provider_id:
        return False
    if parsed.model != normalize_model_for_namespace(model):
        return False
    if parsed.schema_version != EMBEDDING_SCHEMA_VERSION:
        return False
    if expected_dimension and parsed.dimension != expected_dimension:
        return False
    return True


def build_vector_id(namespace: str, path: str, chunk_id: int) -> str:
    return f"{namespace}::{path}#{chunk_id}"


def parse_vector_id(vector_id: str) -> tuple[str, str, int] | None:
    """Split a vector id into (namespace, path, chunk_id)"""
    namespace, sep, rest = vector_id.partition("::")
    if not sep:
        return None
    path, sep, chunk = rest.rpartition("#")
    if not sep or not path:
        return None
    try:
        return namespace, path, int(chunk)
    except ValueError:
        return None
