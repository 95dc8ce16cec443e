# ---------------------------------------------------------------------------- #

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Union

from kubernetes_asyncio.client import V1PersistentVolumeClaim  # type: ignore

from modelcache.shared.util import join_path, log_debug

# ---------------------------------------------------------------------------- #

# ${.PVC.labels.<key>}, ${.PVC.annotations.<key>}, or ${.PVC.<field>}
_PLACEHOLDER_PATTERN = re.compile(
    r"\$\{\.PVC\.(?:(labels|annotations)\.(.*?)|(.*?))\}"
)


@dataclass(frozen=True)
class LiteralText:
    text: str


@dataclass(frozen=True)
class LabelRef:
    key: str


@dataclass(frozen=True)
class AnnotationRef:
    key: str


@dataclass(frozen=True)
class FieldRef:
    """Reference to the claim's 'name' or 'namespace'. Any other field
    evaluates to the empty string."""

    field: str


Segment = Union[LiteralText, LabelRef, AnnotationRef, FieldRef]


def parse_path_pattern(pattern: str) -> list[Segment]:

    segments: list[Segment] = []
    position = 0

    for match in _PLACEHOLDER_PATTERN.finditer(pattern):

        if match.start() > position:
            segments.append(LiteralText(pattern[position : match.start()]))

        kind, key, field_name = match.groups()

        if kind == "labels":
            segments.append(LabelRef(key))
        elif kind == "annotations":
            segments.append(AnnotationRef(key))
        else:
            segments.append(FieldRef(field_name))

        position = match.end()

    if position < len(pattern):
        segments.append(LiteralText(pattern[position:]))

    return segments


# ---------------------------------------------------------------------------- #


@dataclass(frozen=True)
class ClaimMetadata:

    name: str
    namespace: str
    labels: Mapping[str, str] = field(default_factory=dict)
    annotations: Mapping[str, str] = field(default_factory=dict)

    @staticmethod
    def from_pvc(pvc: V1PersistentVolumeClaim) -> ClaimMetadata:

        return ClaimMetadata(
            name=pvc.metadata.name,
            namespace=pvc.metadata.namespace,
            labels=dict(pvc.metadata.labels or {}),
            annotations=dict(pvc.metadata.annotations or {}),
        )

    @property
    def fields(self) -> Mapping[str, str]:
        return {"name": self.name, "namespace": self.namespace}


@dataclass(frozen=True)
class ResolvedPath:

    path: str

    uses_claim_metadata: bool
    """Whether the pattern referenced at least one label or annotation."""

    missing_placeholder: bool
    """Whether some referenced label or annotation was absent, in which case
    the claim name was appended to `path`."""


def resolve_path_pattern(pattern: str, metadata: ClaimMetadata) -> ResolvedPath:
    """
    Substitute every placeholder in `pattern` with the corresponding claim
    label, annotation, or field.

    Absent labels and annotations are substituted with the empty string, and
    the claim name is then appended as a trailing path segment, so that claims
    that could not be told apart by the pattern still get distinct paths.
    """

    parts: list[str] = []
    uses_claim_metadata = False
    missing_placeholder = False

    for segment in parse_path_pattern(pattern):

        if isinstance(segment, LiteralText):

            parts.append(segment.text)

        elif isinstance(segment, (LabelRef, AnnotationRef)):

            values = (
                metadata.labels
                if isinstance(segment, LabelRef)
                else metadata.annotations
            )

            value = values.get(segment.key)

            if value is None:
                missing_placeholder = True

            parts.append(value or "")
            uses_claim_metadata = True

        else:

            parts.append(metadata.fields.get(segment.field, ""))

    path = "".join(parts)

    if missing_placeholder:
        path = join_path(path, metadata.name)

    log_debug(f"Path pattern {pattern!r} resolved to {path!r}")

    return ResolvedPath(
        path=path,
        uses_claim_metadata=uses_claim_metadata,
        missing_placeholder=missing_placeholder,
    )


# ---------------------------------------------------------------------------- #
