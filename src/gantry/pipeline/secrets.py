"""Secret store and per-stage secret scoping.

The store is filled once at startup (environment variables carrying the
``GANTRY_SECRET_`` prefix and/or a dotenv file), sealed, and read only
through :class:`SecretScopeManager`. A stage receives exactly the secrets it
declares, never a superset, and a lookup of an undeclared name raises
:class:`SecretScopeError` instead of returning an empty value.

Stage subprocesses get an environment built by :func:`build_stage_env`: the
host environment with secret-looking variables stripped, then only the
stage's scoped secrets injected.
"""

from __future__ import annotations

import logging
import os
import re
from collections.abc import Iterator, Mapping
from pathlib import Path
from typing import TYPE_CHECKING, Iterable

from dotenv import dotenv_values

from gantry.pipeline.errors import SecretScopeError

if TYPE_CHECKING:
    from gantry.pipeline.models import StageDefinition

logger = logging.getLogger("gantry.pipeline.secrets")

SECRET_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

DEFAULT_ENV_PREFIX = "GANTRY_SECRET_"

# Host variables that never reach a stage subprocess unless a stage declares them
_KNOWN_SECRET_ENV_VARS = frozenset(
    {
        "GANTRY_WEBHOOK_SECRET",
        "GITHUB_TOKEN",
        "GH_TOKEN",
        "AWS_SECRET_ACCESS_KEY",
        "AWS_SESSION_TOKEN",
        "DOCKER_PASSWORD",
        "REGISTRY_TOKEN",
        "VAULT_TOKEN",
        "NPM_TOKEN",
    }
)

_SECRET_PATTERNS = frozenset(
    {
        "API_KEY",
        "SECRET_KEY",
        "PRIVATE_KEY",
        "ACCESS_TOKEN",
        "AUTH_TOKEN",
        "PASSWORD",
    }
)

_KEEP = frozenset({"SSH_AUTH_SOCK"})

REDACTED = "***"


class SecretStore:
    """Process-wide secret values. Write-once at startup, read-many after.

    Values are only readable through :class:`SecretScopeManager`; ``repr``
    shows names only.
    """

    def __init__(self, values: Mapping[str, str] | None = None):
        self._values: dict[str, str] = {}
        self._sealed = False
        if values:
            self.update(values)

    # ── Loading ──────────────────────────────────────────────────────────────

    @classmethod
    def from_env(
        cls,
        prefix: str = DEFAULT_ENV_PREFIX,
        environ: Mapping[str, str] | None = None,
    ) -> SecretStore:
        """Collect ``<prefix>NAME=value`` variables as secret ``NAME``."""
        source = os.environ if environ is None else environ
        values = {
            key[len(prefix):]: value
            for key, value in source.items()
            if key.startswith(prefix) and len(key) > len(prefix)
        }
        return cls(values)

    @classmethod
    def from_dotenv(cls, path: str | Path) -> SecretStore:
        """Load secrets from a dotenv file (``NAME=value`` lines)."""
        p = Path(path)
        if not p.exists():
            raise FileNotFoundError(f"Secrets file not found: {p}")
        raw = dotenv_values(p)
        return cls({k: v for k, v in raw.items() if v is not None})

    @classmethod
    def load(
        cls,
        *,
        env_prefix: str | None = DEFAULT_ENV_PREFIX,
        dotenv_path: str | Path | None = None,
    ) -> SecretStore:
        """Build and seal the store from the environment and an optional file.

        File values override environment values of the same name.
        """
        store = cls.from_env(env_prefix) if env_prefix else cls()
        if dotenv_path:
            store.update(cls.from_dotenv(dotenv_path)._values)
        store.seal()
        logger.info("Secret store sealed with %d secrets", len(store))
        return store

    # ── Writes (before seal only) ────────────────────────────────────────────

    def set(self, name: str, value: str) -> None:
        if self._sealed:
            raise RuntimeError("Secret store is sealed; secrets are write-once at startup")
        if not SECRET_NAME_PATTERN.match(name):
            raise ValueError(f"Invalid secret name {name!r}")
        self._values[name] = value

    def update(self, values: Mapping[str, str]) -> None:
        for name, value in values.items():
            self.set(name, value)

    def seal(self) -> None:
        self._sealed = True

    # ── Reads ────────────────────────────────────────────────────────────────

    @property
    def sealed(self) -> bool:
        return self._sealed

    def has(self, name: str) -> bool:
        return name in self._values

    def names(self) -> frozenset[str]:
        return frozenset(self._values)

    def _reveal(self, name: str) -> str:
        return self._values[name]

    def __contains__(self, name: object) -> bool:
        return name in self._values

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        state = "sealed" if self._sealed else "open"
        return f"SecretStore({state}, names={sorted(self._values)})"


class ScopedSecrets(Mapping[str, str]):
    """Read-only view of the secrets declared by one stage.

    Indexing or ``get`` with an undeclared name raises SecretScopeError.
    """

    def __init__(self, stage: str, values: Mapping[str, str]):
        self._stage = stage
        self._values = dict(values)

    @property
    def stage(self) -> str:
        return self._stage

    def __getitem__(self, name: str) -> str:
        if name not in self._values:
            raise SecretScopeError(self._stage, name)
        return self._values[name]

    def get(self, name: str, default: str | None = None) -> str:  # type: ignore[override]
        # No silent default for undeclared names
        return self[name]

    def __contains__(self, name: object) -> bool:
        return name in self._values

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        return f"ScopedSecrets(stage={self._stage!r}, names={sorted(self._values)})"

    def redact(self, text: str) -> str:
        """Mask every scoped secret value in ``text``."""
        return redact(text, self._values.values())


class SecretScopeManager:
    """Resolves a stage's declared secret names against the store."""

    def __init__(self, store: SecretStore | None = None):
        self._store = store or SecretStore()

    @property
    def store(self) -> SecretStore:
        return self._store

    def missing(self, stage: StageDefinition) -> list[str]:
        """Declared secret names the store does not hold."""
        return [name for name in stage.secrets if not self._store.has(name)]

    def scope_for(self, stage: StageDefinition) -> ScopedSecrets:
        """Return exactly the secrets ``stage`` declares."""
        values: dict[str, str] = {}
        for name in stage.secrets:
            if not self._store.has(name):
                raise SecretScopeError(
                    stage.name,
                    name,
                    f"Stage '{stage.name}' declares secret '{name}' "
                    "which is not present in the secret store",
                )
            values[name] = self._store._reveal(name)
        logger.debug("Scoped %d secrets for stage '%s'", len(values), stage.name)
        return ScopedSecrets(stage.name, values)


def build_stage_env(
    scoped: ScopedSecrets,
    *,
    base_env: Mapping[str, str] | None = None,
    extra: Mapping[str, str] | None = None,
    store_names: Iterable[str] = (),
) -> dict[str, str]:
    """Build the environment for one stage's subprocess.

    Starts from ``base_env`` (default ``os.environ``), strips known secret
    variables, secret-looking names, ``GANTRY_SECRET_*`` variables and any
    name held by the store, adds ``extra`` and finally the scoped secrets.
    Never mutates ``os.environ``.
    """
    env = dict(os.environ if base_env is None else base_env)
    strip_set = set(_KNOWN_SECRET_ENV_VARS) | set(store_names)

    stripped: list[str] = []
    for key in list(env.keys()):
        if key in _KEEP:
            continue
        key_upper = key.upper()
        if (
            key in strip_set
            or key.startswith(DEFAULT_ENV_PREFIX)
            or any(pattern in key_upper for pattern in _SECRET_PATTERNS)
        ):
            del env[key]
            stripped.append(key)

    if stripped:
        logger.debug(
            "Stage '%s' env: stripped %d secret vars: %s",
            scoped.stage,
            len(stripped),
            ", ".join(sorted(stripped)),
        )

    if extra:
        env.update(extra)
    for name in scoped:
        env[name] = scoped[name]
    return env


def redact(text: str, values: Iterable[str]) -> str:
    """Replace each non-empty secret value in ``text`` with ``***``."""
    # Longest first so a value containing another is masked whole
    for value in sorted((v for v in values if v), key=len, reverse=True):
        text = text.replace(value, REDACTED)
    return text
