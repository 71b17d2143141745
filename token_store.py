import os
import tempfile
from pathlib import Path

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

TOKEN_DIR_NAME = ".mcp-twake-mail"
TOKEN_FILE_NAME = "tokens.json"


class StoredTokens(BaseModel):
    """Tokens persisted between runs. Serialized with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    access_token: str
    refresh_token: str | None = None
    id_token: str | None = None
    # Unix timestamp in seconds
    expires_at: int | None = None


def token_path() -> Path:
    """Location of the token file, resolved against the current home directory."""
    return Path.home() / TOKEN_DIR_NAME / TOKEN_FILE_NAME


def save_tokens(tokens: StoredTokens) -> None:
    """Atomically replace the token file.

    The directory is created 0700 and the file is written 0600 via a temp
    file in the same directory followed by ``os.replace``.
    """
    path = token_path()
    path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)

    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".tokens-", suffix=".tmp")
    try:
        # mkstemp creates the file 0600
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(tokens.model_dump_json(by_alias=True, exclude_none=True, indent=2))
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
    os.chmod(path, 0o600)


def load_tokens() -> StoredTokens | None:
    """Return the stored tokens, or None when nothing has been saved.

    Raises:
        pydantic.ValidationError: If the file is corrupt.
        OSError: On permission problems.
    """
    try:
        content = token_path().read_text("utf-8")
    except FileNotFoundError:
        return None
    return StoredTokens.model_validate_json(content)


def clear_tokens() -> None:
    """Delete stored tokens (logout). Missing file is not an error."""
    token_path().unlink(missing_ok=True)
