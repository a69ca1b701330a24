from __future__ import annotations

import json
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from hashlib import sha256
from typing import Any

from reloader.src.options import CONFIGMAP_KIND, SECRET_KIND, AnnotationKeys

ENV_VAR_PREFIX = "STAKATER_"
CONFIGMAP_ENV_VAR_POSTFIX = "CONFIGMAP"
SECRET_ENV_VAR_POSTFIX = "SECRET"


@dataclass(frozen=True)
class ChangeConfig:
    """One detected ConfigMap or Secret change, evaluated against workloads.

    ``annotation_key`` and ``typed_auto_annotation_key`` are resolved for the
    resource kind at construction time so the evaluator never branches on kind
    to find them.
    """

    resource_name: str
    namespace: str
    kind: str
    annotation_key: str
    typed_auto_annotation_key: str
    content_hash: str
    resource_annotations: Mapping[str, str] = field(default_factory=dict)

    @property
    def type_postfix(self) -> str:
        """Upper-case kind label used in env var names and log messages."""
        return CONFIGMAP_ENV_VAR_POSTFIX if self.kind == CONFIGMAP_KIND else SECRET_ENV_VAR_POSTFIX

    @classmethod
    def for_resource(
        cls,
        kind: str,
        name: str,
        namespace: str,
        content_hash: str,
        keys: AnnotationKeys,
        resource_annotations: Mapping[str, str] | None = None,
    ) -> ChangeConfig:
        if kind not in {CONFIGMAP_KIND, SECRET_KIND}:
            raise ValueError(f"unsupported resource kind: {kind!r}")
        return cls(
            resource_name=name,
            namespace=namespace,
            kind=kind,
            annotation_key=keys.reload_for(kind),
            typed_auto_annotation_key=keys.typed_auto_for(kind),
            content_hash=content_hash,
            resource_annotations=dict(resource_annotations or {}),
        )


def normalize_data(raw_data: Any) -> dict[str, str]:
    """Coerce ``data``/``binaryData`` into a stable ``dict[str, str]``."""
    if not isinstance(raw_data, dict):
        return {}
    return {
        k: ("" if v is None else str(v))
        for k, v in raw_data.items()
        if isinstance(k, str)
    }


def content_hash(data: Mapping[str, str], binary_data: Mapping[str, str] | None = None) -> str:
    """Return a SHA-256 hex digest of a ConfigMap's or Secret's content.

    Only data is hashed, never metadata, so label or annotation edits on the
    resource do not look like changes.
    """
    payload: dict[str, Any] = {"data": dict(data)}
    if binary_data:
        payload["binaryData"] = dict(binary_data)
    stable_payload = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return sha256(stable_payload.encode("utf-8")).hexdigest()


def convert_to_env_var_name(text: str) -> str:
    """Upper-case *text* and collapse each run of non-alphanumerics to one ``_``.

    Leading separators are dropped: ``"my-app.config"`` becomes ``MY_APP_CONFIG``.
    """
    chars: list[str] = []
    last_char_valid = False
    for ch in text.upper():
        if ("A" <= ch <= "Z") or ("0" <= ch <= "9"):
            chars.append(ch)
            last_char_valid = True
        else:
            if last_char_valid:
                chars.append("_")
            last_char_valid = False
    return "".join(chars)


def env_var_name(config: ChangeConfig) -> str:
    return f"{ENV_VAR_PREFIX}{convert_to_env_var_name(config.resource_name)}_{config.type_postfix}"


@dataclass(frozen=True)
class ReloadSource:
    """Informational record of the resource that caused the latest reload."""

    type: str
    name: str
    namespace: str
    hash: str
    container_refs: tuple[str, ...]
    observed_at: int

    @classmethod
    def from_config(cls, config: ChangeConfig, containers: list[str]) -> ReloadSource:
        return cls(
            type=config.type_postfix,
            name=config.resource_name,
            namespace=config.namespace,
            hash=config.content_hash,
            container_refs=tuple(containers),
            observed_at=int(time.time()),
        )

    def to_json(self) -> str:
        return json.dumps(
            {
                "type": self.type,
                "name": self.name,
                "namespace": self.namespace,
                "hash": self.hash,
                "containerRefs": list(self.container_refs),
                "observedAt": self.observed_at,
            },
            separators=(",", ":"),
        )
