"""Configuration loading.

Reads ``config/config.json`` and turns it into a ``MergeConfig`` that is
passed explicitly to the fetcher, the merge engine and the store client.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Dict, Optional, Sequence, Tuple

from .localio.io import read_json
from .merge import ALL_MERGEABLE_FIELDS, FIELDS_TO_MERGE
from .naming import normalize_username

DEFAULT_CONFIG_PATH = "config/config.json"


@dataclass(frozen=True)
class MergeConfig:
    store_base_url: str = "https://adminpage.hypersmmo.workers.dev/admin"
    shinyboard_base_url: str = "https://shinyboard.net/api"
    fields_to_merge: Tuple[str, ...] = FIELDS_TO_MERGE
    all_mergeable_fields: Tuple[str, ...] = ALL_MERGEABLE_FIELDS
    # Store name -> ShinyBoard name, keys normalized.
    username_mapping: Dict[str, str] = field(default_factory=dict)
    output_path: str = "merged_shiny_data.json"
    push_delay_seconds: float = 5.0
    request_timeout_seconds: float = 30.0
    max_retries: int = 3
    retry_backoff_seconds: float = 1.0
    max_pages: int = 500
    push_action: str = "Automated merge from merge script"

    @property
    def database_url(self) -> str:
        return f"{self.store_base_url.rstrip('/')}/database"

    @property
    def update_database_url(self) -> str:
        return f"{self.store_base_url.rstrip('/')}/update-database"

    @classmethod
    def from_dict(cls, cfg: Dict[str, Any]) -> "MergeConfig":
        """Build a config from a parsed JSON dict, falling back to defaults."""
        defaults = cls()
        mapping = cfg.get("username_mapping") or {}
        if not isinstance(mapping, dict):
            raise RuntimeError("username_mapping must be an object")

        return cls(
            store_base_url=str(cfg.get("store_base_url", defaults.store_base_url)),
            shinyboard_base_url=str(
                cfg.get("shinyboard_base_url", defaults.shinyboard_base_url)
            ),
            fields_to_merge=_as_field_tuple(
                cfg.get("fields_to_merge"), defaults.fields_to_merge
            ),
            all_mergeable_fields=_as_field_tuple(
                cfg.get("all_mergeable_fields"), defaults.all_mergeable_fields
            ),
            username_mapping={
                normalize_username(k): str(v).strip()
                for k, v in mapping.items()
                if normalize_username(k) and str(v).strip()
            },
            output_path=str(cfg.get("output_path", defaults.output_path)),
            push_delay_seconds=float(
                cfg.get("push_delay_seconds", defaults.push_delay_seconds)
            ),
            request_timeout_seconds=float(
                cfg.get("request_timeout_seconds", defaults.request_timeout_seconds)
            ),
            max_retries=int(cfg.get("max_retries", defaults.max_retries)),
            retry_backoff_seconds=float(
                cfg.get("retry_backoff_seconds", defaults.retry_backoff_seconds)
            ),
            max_pages=int(cfg.get("max_pages", defaults.max_pages)),
            push_action=str(cfg.get("push_action", defaults.push_action)),
        )

    def with_overrides(
        self,
        *,
        fields_to_merge: Optional[Sequence[str]] = None,
        output_path: Optional[str] = None,
        push_delay_seconds: Optional[float] = None,
    ) -> "MergeConfig":
        """Return a copy with CLI overrides applied (``None`` keeps the value)."""
        changes: Dict[str, Any] = {}
        if fields_to_merge:
            changes["fields_to_merge"] = tuple(fields_to_merge)
        if output_path:
            changes["output_path"] = output_path
        if push_delay_seconds is not None:
            changes["push_delay_seconds"] = float(push_delay_seconds)
        return replace(self, **changes) if changes else self


def _as_field_tuple(value: Any, default: Tuple[str, ...]) -> Tuple[str, ...]:
    if value is None:
        return default
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise RuntimeError("field lists must be arrays of strings")
    return tuple(v.strip() for v in value if v.strip())


def load_config(config_path: str = DEFAULT_CONFIG_PATH) -> MergeConfig:
    """Load JSON configuration from ``config_path``.

    Raises ``RuntimeError`` if the file is missing or invalid.
    """
    data = read_json(config_path)
    if not data or not isinstance(data, dict):
        raise RuntimeError(f"Missing or invalid config: {config_path}")
    return MergeConfig.from_dict(data)
