"""
Note store settings.

One immutable settings object is shared by the adapter, store, bulk
reader and synchronizer. Every field can be overridden through an
optional NOTESTORE_* environment variable via NoteStoreSettings.from_env().
"""

import os
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


# Maximum size of a single note (10 MiB)
MAX_NOTE_SIZE = 10 * 1024 * 1024

# Maximum number of JSON documents decoded from one note
MAX_JSON_DOCUMENTS = 1000

# Default push attempts before giving up on concurrent writers
DEFAULT_PUSH_ATTEMPTS = 3

# Default bound on simultaneously running backend reads in bulk calls
DEFAULT_BULK_CONCURRENCY = 10

# Environment variable prefix for overrides (optional)
ENV_PREFIX = "NOTESTORE_"


class NoteStoreSettings(BaseModel):
    """
    Settings for the note store.

    Frozen once created: components hold a reference and never copy it.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    # ==================== BACKEND ====================
    git_binary: str = "git"
    author_name: str = "Library Notes"
    author_email: str = "lib@example.com"
    command_timeout: Optional[float] = Field(default=None, gt=0)

    # ==================== LIMITS ====================
    max_note_size: int = Field(default=MAX_NOTE_SIZE, gt=0)
    max_json_documents: int = Field(default=MAX_JSON_DOCUMENTS, gt=0)
    verify_commit_refs: bool = True

    # ==================== CONCURRENCY ====================
    bulk_concurrency: int = Field(default=DEFAULT_BULK_CONCURRENCY, ge=1)

    # ==================== SYNCHRONIZATION ====================
    push_attempts: int = Field(default=DEFAULT_PUSH_ATTEMPTS, ge=1)
    push_backoff_seconds: float = Field(default=0.1, ge=0)
    merge_strategy: str = "cat_sort_uniq"

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None, **overrides: Any) -> "NoteStoreSettings":
        """
        Build settings from NOTESTORE_* environment variables.

        Explicit keyword overrides win over the environment. Values are
        validated by pydantic, so "10" becomes 10 and bad values fail loudly.

        Example:
            NOTESTORE_BULK_CONCURRENCY=4 -> bulk_concurrency=4
        """
        environ = os.environ if environ is None else environ
        values: Dict[str, Any] = {}
        for name in cls.model_fields:
            env_name = ENV_PREFIX + name.upper()
            if env_name in environ:
                values[name] = environ[env_name]
        values.update(overrides)
        return cls.model_validate(values)


DEFAULT_SETTINGS = NoteStoreSettings()
