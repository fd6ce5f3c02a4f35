"""Havoc configuration.

Two layers of configuration live here:
- HavocSettings: service settings read from HAVOC_* environment variables
  via pydantic-settings.
- HavocConfig: per-repository settings read from a `.havoc.yaml` file in the
  cloned repository, merged onto built-in defaults.

The command allow-list and protected-file helpers are also defined here
because both the sandbox runner and the task executor consult them.
"""

import json
import logging
import re
from pathlib import Path
from typing import List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


logger = logging.getLogger(__name__)


class HavocSettings(BaseSettings):
    """Service configuration from environment variables.

    All environment variables are prefixed with HAVOC_ (e.g., HAVOC_GITHUB_TOKEN).

    Required fields (must be set via environment variables):
    - github_token: GitHub API token used for cloning, PRs and comments
    - llm_url: URL of the OpenAI-compatible LLM endpoint
    """

    model_config = SettingsConfigDict(
        env_prefix="HAVOC_",
        case_sensitive=False,
    )

    # -------------------------------------------------------------------------
    # GitHub Configuration
    # -------------------------------------------------------------------------
    github_token: str

    # Base URL for GitHub API (supports GitHub Enterprise)
    github_base_url: str = "https://api.github.com"

    # Host used for authenticated clone URLs
    github_clone_host: str = "github.com"

    # When set, webhook deliveries must carry a valid X-Hub-Signature-256
    github_webhook_secret: Optional[str] = None

    # -------------------------------------------------------------------------
    # LLM Configuration
    # -------------------------------------------------------------------------
    llm_url: str

    llm_model: str = "gpt-4o-mini"

    # Local OpenAI-compatible servers accept any key
    llm_api_key: str = "not-needed"

    llm_timeout_seconds: int = 120

    llm_temperature: float = 0.2

    # -------------------------------------------------------------------------
    # Database Configuration
    # -------------------------------------------------------------------------
    # PostgreSQL connection string; runs are kept in memory when unset
    database_url: Optional[str] = None

    # -------------------------------------------------------------------------
    # Sandbox Configuration
    # -------------------------------------------------------------------------
    workspace_base_path: str = "/tmp/havoc-workspaces"

    sandbox_image: str = "havoc-sandbox"

    sandbox_timeout_seconds: int = 600

    sandbox_memory_limit: str = "2g"

    sandbox_user: str = "havoc"

    # -------------------------------------------------------------------------
    # Queue Configuration
    # -------------------------------------------------------------------------
    max_concurrent_runs: int = 3

    # How long webhook delivery ids are remembered for de-duplication
    delivery_ttl_seconds: int = 3600

    # -------------------------------------------------------------------------
    # Server Configuration
    # -------------------------------------------------------------------------
    host: str = "0.0.0.0"

    port: int = 8080

    # -------------------------------------------------------------------------
    # Validators
    # -------------------------------------------------------------------------
    @field_validator("github_token")
    @classmethod
    def validate_github_token(cls, v: str) -> str:
        """Validate that GitHub token is not empty."""
        if not v or not v.strip():
            raise ValueError("github_token cannot be empty")
        return v

    @field_validator("llm_url")
    @classmethod
    def validate_llm_url(cls, v: str) -> str:
        """Validate that LLM URL is a valid URL format."""
        if not v or not v.strip():
            raise ValueError("llm_url cannot be empty")
        if not v.startswith(("http://", "https://")):
            raise ValueError("llm_url must start with http:// or https://")
        return v

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v: Optional[str]) -> Optional[str]:
        """Validate the database URL format when one is given."""
        if v is None:
            return v
        if not v.startswith(("postgresql://", "postgres://")):
            raise ValueError(
                "database_url must start with postgresql:// or postgres://"
            )
        return v

    @field_validator("workspace_base_path")
    @classmethod
    def validate_workspace_path(cls, v: str) -> str:
        """Validate that workspace base path is an absolute path."""
        if not Path(v).is_absolute():
            raise ValueError("workspace_base_path must be an absolute path")
        return v

    @field_validator("sandbox_timeout_seconds", "max_concurrent_runs", "delivery_ttl_seconds")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        """Validate that counters and timeouts are positive."""
        if v < 1:
            raise ValueError("value must be at least 1")
        return v

    @field_validator("port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        """Validate that port is in valid range."""
        if not 1 <= v <= 65535:
            raise ValueError("port must be between 1 and 65535")
        return v


def get_settings() -> HavocSettings:
    """Create and return HavocSettings instance.

    Returns:
        HavocSettings: Configured settings instance.

    Raises:
        pydantic.ValidationError: If required fields are missing or invalid.
    """
    return HavocSettings()


# -----------------------------------------------------------------------------
# Per-repository configuration
# -----------------------------------------------------------------------------

DEFAULT_ALLOWED_COMMANDS: List[str] = [
    "git",
    "npm",
    "yarn",
    "pnpm",
    "node",
    "npx",
    "pytest",
    "python",
    "go",
    "cargo",
]

DEFAULT_PROTECTED_FILES: List[str] = [
    ".env",
    ".env.*",
    "*.key",
    "*.pem",
    "secrets.*",
    ".git/**",
]

DEFAULT_TEST_COMMAND = "npm test"

CONFIG_FILE_NAMES = [".havoc.yaml", ".havoc.yml", "havoc.yaml", "havoc.yml"]

# npm init writes this placeholder into package.json
NPM_PLACEHOLDER_TEST_SCRIPT = 'echo "Error: no test specified" && exit 1'


class HavocConfig(BaseModel):
    """Per-repository pipeline configuration.

    Attributes:
        version: Config file format version.
        max_iterations: Upper bound on agent iterations for a run.
        timeout_minutes: Wall-clock budget for a run.
        test_command: Command used to run the repository's tests.
        min_confidence: Minimum confidence score required to publish.
        min_test_pass_rate: Minimum test pass rate (percent) required to publish.
        allowed_commands: Command prefixes the sandbox runner may execute.
        protected_files: Glob-ish patterns the executor must never touch.
    """

    version: int = Field(default=1, description="Config file format version")

    max_iterations: int = Field(default=50, ge=1)

    timeout_minutes: int = Field(default=10, ge=1)

    test_command: str = Field(default=DEFAULT_TEST_COMMAND, min_length=1)

    min_confidence: int = Field(default=70, ge=0, le=100)

    min_test_pass_rate: int = Field(default=90, ge=0, le=100)

    allowed_commands: List[str] = Field(
        default_factory=lambda: list(DEFAULT_ALLOWED_COMMANDS)
    )

    protected_files: List[str] = Field(
        default_factory=lambda: list(DEFAULT_PROTECTED_FILES)
    )


def _merge_unique(defaults: List[str], extra: List[str]) -> List[str]:
    merged = list(defaults)
    for item in extra:
        if item not in merged:
            merged.append(item)
    return merged


def load_havoc_config(repo_dir: str) -> HavocConfig:
    """Load the repository's Havoc config, falling back to defaults.

    The first readable file among CONFIG_FILE_NAMES wins. The allowed_commands
    and protected_files lists in the file extend the defaults rather than
    replacing them, so a repository cannot unprotect `.env`. When the file
    does not set test_command, it is detected from the repository layout.

    Args:
        repo_dir: Path to the cloned repository on the host.

    Returns:
        The effective HavocConfig.
    """
    root = Path(repo_dir)

    for name in CONFIG_FILE_NAMES:
        path = root / name
        if not path.is_file():
            continue

        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
            if not isinstance(data, dict):
                raise ValueError("config root must be a mapping")

            data["allowed_commands"] = _merge_unique(
                DEFAULT_ALLOWED_COMMANDS, data.get("allowed_commands") or []
            )
            data["protected_files"] = _merge_unique(
                DEFAULT_PROTECTED_FILES, data.get("protected_files") or []
            )
            if not data.get("test_command"):
                data["test_command"] = detect_test_command(repo_dir)

            config = HavocConfig(**data)
            logger.info(
                "Loaded repository config",
                extra={"path": str(path), "test_command": config.test_command},
            )
            return config

        except Exception as e:
            logger.warning(
                "Failed to parse repository config",
                extra={"path": str(path), "error": str(e)},
            )

    return HavocConfig(test_command=detect_test_command(repo_dir))


def detect_test_command(repo_dir: str) -> str:
    """Guess the test command from the files present in the repository.

    Args:
        repo_dir: Path to the cloned repository on the host.

    Returns:
        The detected test command, or `npm test` when nothing matches.
    """
    root = Path(repo_dir)

    package_json = root / "package.json"
    if package_json.is_file():
        try:
            pkg = json.loads(package_json.read_text(encoding="utf-8"))
            script = (pkg.get("scripts") or {}).get("test")
            if script and script != NPM_PLACEHOLDER_TEST_SCRIPT:
                return "npm test"
        except (OSError, ValueError, AttributeError):
            pass

    if (root / "pytest.ini").is_file() or (root / "pyproject.toml").is_file():
        return "pytest"

    if (root / "go.mod").is_file():
        return "go test ./..."

    if (root / "Cargo.toml").is_file():
        return "cargo test"

    return DEFAULT_TEST_COMMAND


def is_command_allowed(command: str, allowed_commands: List[str]) -> bool:
    """Check a command line against the allow-list.

    A command is allowed when it equals an allowed prefix or starts with the
    prefix followed by a space, so `gitX status` does not match `git`.

    Args:
        command: The full command line.
        allowed_commands: Allowed command prefixes.

    Returns:
        True if the command may be executed.
    """
    cmd = command.strip()
    for allowed in allowed_commands:
        if cmd == allowed or cmd.startswith(allowed + " "):
            return True
    return False


def _pattern_to_regex(pattern: str) -> "re.Pattern[str]":
    escaped = "".join(
        ".*" if ch == "*" else "." if ch == "?" else re.escape(ch)
        for ch in pattern
    )
    return re.compile(f"^{escaped}$")


def is_file_protected(file_path: str, protected_files: List[str]) -> bool:
    """Check whether a path matches any protected-file pattern.

    Patterns containing `*` are anchored globs where `*` matches any run of
    characters (including `/`) and `?` matches one character. Other patterns
    match the path exactly or as a leading prefix.

    Args:
        file_path: Repository-relative file path.
        protected_files: Protected-file patterns.

    Returns:
        True if the file must not be modified.
    """
    for pattern in protected_files:
        if "*" in pattern:
            if _pattern_to_regex(pattern).match(file_path):
                return True
        elif file_path == pattern or file_path.startswith(pattern):
            return True
    return False
