"""Persistent storage for named environment-variable bundles.

Each bundle is one JSON file ``{slug}.json`` under the env directory
(default ``~/.companion/envs``):

    {"name": ..., "slug": ..., "variables": {...},
     "createdAt": <epoch ms>, "updatedAt": <epoch ms>}
"""

from __future__ import annotations

import json
import logging
import re
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_ENV_DIR = Path.home() / ".companion" / "envs"

_SLUG_RE = re.compile(r"^[a-z0-9]+(?:-[a-z0-9]+)*$")


def slugify(name: str) -> str:
    """Lowercase, whitespace to dashes, drop everything but [a-z0-9-]."""
    slug = re.sub(r"\s+", "-", name.strip().lower())
    slug = re.sub(r"[^a-z0-9-]", "", slug)
    slug = re.sub(r"-+", "-", slug)
    return slug.strip("-")


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class EnvBundle:
    name: str
    slug: str
    variables: dict[str, str] = field(default_factory=dict)
    created_at: int = field(default_factory=_now_ms)
    updated_at: int = field(default_factory=_now_ms)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "slug": self.slug,
            "variables": dict(self.variables),
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EnvBundle:
        variables = data.get("variables") or {}
        if not isinstance(variables, dict):
            raise ValueError("variables must be an object")
        return cls(
            name=str(data["name"]),
            slug=str(data["slug"]),
            variables={str(k): str(v) for k, v in variables.items()},
            created_at=int(data.get("createdAt") or 0),
            updated_at=int(data.get("updatedAt") or 0),
        )


def _validate_variables(variables: Any) -> dict[str, str]:
    if variables is None:
        return {}
    if not isinstance(variables, dict):
        raise ValueError("variables must be an object of name/value pairs")
    return {str(k): str(v) for k, v in variables.items()}


class EnvStore:
    """Load and save environment bundles."""

    def __init__(self, env_dir: str | Path | None = None) -> None:
        self._dir = Path(env_dir).expanduser() if env_dir else DEFAULT_ENV_DIR

    @property
    def directory(self) -> Path:
        return self._dir

    def _path(self, slug: str) -> Path | None:
        if not _SLUG_RE.match(slug):
            return None
        return self._dir / f"{slug}.json"

    def _ensure_dir(self) -> None:
        self._dir.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def _load_file(path: Path) -> EnvBundle | None:
        try:
            return EnvBundle.from_dict(json.loads(path.read_text(encoding="utf-8")))
        except FileNotFoundError:
            return None
        except (json.JSONDecodeError, OSError, KeyError, TypeError, ValueError):
            logger.warning("Failed to load environment bundle %s", path)
            return None

    def _write(self, bundle: EnvBundle) -> None:
        self._ensure_dir()
        path = self._dir / f"{bundle.slug}.json"
        path.write_text(json.dumps(bundle.to_dict(), indent=2) + "\n", encoding="utf-8")

    def list(self) -> list[EnvBundle]:
        """All readable bundles sorted by name. Corrupt files are skipped."""
        if not self._dir.is_dir():
            return []
        bundles = []
        for path in sorted(self._dir.glob("*.json")):
            bundle = self._load_file(path)
            if bundle is not None:
                bundles.append(bundle)
        bundles.sort(key=lambda b: b.name.lower())
        return bundles

    def get(self, slug: str) -> EnvBundle | None:
        path = self._path(slug)
        if path is None:
            return None
        return self._load_file(path)

    def create(self, name: str, variables: dict[str, str] | None = None) -> EnvBundle:
        """Create a bundle. Raises ValueError for a bad or taken name."""
        if not name or not name.strip():
            raise ValueError("Environment name is required")
        slug = slugify(name)
        if not slug:
            raise ValueError("Environment name must contain alphanumeric characters")
        if (self._dir / f"{slug}.json").exists():
            raise ValueError(f'An environment with a similar name already exists ("{slug}")')
        now = _now_ms()
        bundle = EnvBundle(
            name=name.strip(),
            slug=slug,
            variables=_validate_variables(variables),
            created_at=now,
            updated_at=now,
        )
        self._write(bundle)
        logger.info("Environment bundle created slug=%s vars=%d", slug, len(bundle.variables))
        return bundle

    def update(
        self,
        slug: str,
        name: str | None = None,
        variables: dict[str, str] | None = None,
    ) -> EnvBundle | None:
        """Rename and/or replace variables. None if the slug is unknown.

        A rename that changes the slug moves the file.
        """
        existing = self.get(slug)
        if existing is None:
            return None
        new_name = (name or "").strip() or existing.name
        new_slug = slugify(new_name)
        if not new_slug:
            raise ValueError("Environment name must contain alphanumeric characters")
        if new_slug != slug and (self._dir / f"{new_slug}.json").exists():
            raise ValueError(f'An environment with a similar name already exists ("{new_slug}")')

        bundle = EnvBundle(
            name=new_name,
            slug=new_slug,
            variables=(
                _validate_variables(variables) if variables is not None
                else existing.variables
            ),
            created_at=existing.created_at,
            updated_at=_now_ms(),
        )
        if new_slug != slug:
            (self._dir / f"{slug}.json").unlink(missing_ok=True)
        self._write(bundle)
        logger.info("Environment bundle updated slug=%s", new_slug)
        return bundle

    def delete(self, slug: str) -> bool:
        path = self._path(slug)
        if path is None or not path.exists():
            return False
        path.unlink()
        logger.info("Environment bundle deleted slug=%s", slug)
        return True
