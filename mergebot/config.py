import os
from pathlib import Path
from typing import List, Optional


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_list(name: str) -> List[str]:
    raw = os.getenv(name, "")
    return [part.strip() for part in raw.split(",") if part.strip()]


class Settings:
    # Repository this deployment gates
    repo_owner: str
    repo_name: str

    # GitHub credentials: a plain token, or GitHub App credentials
    github_token: str
    app_id: str
    app_private_key: str  # PEM contents (loaded from file path or env)
    installation_id: Optional[int]
    webhook_secret: str

    # Server config
    host: str = "0.0.0.0"
    port: int = int(os.getenv("PORT", "3000"))
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    # Review / landing policy
    allow_self_review: bool
    require_review: bool
    maintainer_mode: bool
    required_checks: List[str]
    test_timeout_seconds: int
    test_branch: str

    # Command parsing
    bot_username: str
    require_slash: bool

    # Git
    ssh_key_file: Path
    git_user: str
    git_email: str
    repos_dir: Path

    # Ingestion
    dedup_capacity: int
    smee_url: str
    relay_reconnect_seconds: float

    # General
    github_api_url: str
    service_version: str

    # Platform client retry/backoff
    max_retries: int
    backoff_base_seconds: float
    backoff_factor: float
    max_backoff_seconds: int
    ref_propagation_attempts: int

    def __init__(self) -> None:
        self.repo_owner = os.getenv("REPO_OWNER", "").strip()
        self.repo_name = os.getenv("REPO_NAME", "").strip()

        self.github_token = os.getenv("GITHUB_TOKEN", "").strip()
        self.app_id = os.getenv("APP_ID", "").strip()
        # APP_PRIVATE_KEY may be a filesystem path to the PEM file or the PEM itself.
        apk_env = os.getenv("APP_PRIVATE_KEY", "").strip()
        pem_contents = apk_env
        if apk_env and os.path.isfile(apk_env):
            with open(apk_env, "r", encoding="utf-8") as f:
                pem_contents = f.read().strip()
        self.app_private_key = pem_contents
        inst = os.getenv("INSTALLATION_ID", "").strip()
        self.installation_id = int(inst) if inst else None
        self.webhook_secret = os.getenv("WEBHOOK_SECRET", "").strip()

        self.allow_self_review = _env_bool("ALLOW_SELF_REVIEW", False)
        self.require_review = _env_bool("REQUIRE_REVIEW", True)
        self.maintainer_mode = _env_bool("MAINTAINER_MODE", True)
        self.required_checks = _env_list("REQUIRED_CHECKS")
        self.test_timeout_seconds = int(os.getenv("TEST_TIMEOUT_SECONDS", str(60 * 60 * 2)))
        self.test_branch = os.getenv("TEST_BRANCH", "auto").strip() or "auto"

        self.bot_username = os.getenv("BOT_USERNAME", "").strip()
        self.require_slash = _env_bool("REQUIRE_SLASH", True)

        self.ssh_key_file = Path(os.getenv("SSH_KEY_FILE", "deploy_key")).expanduser()
        self.git_user = os.getenv("GIT_USER", "mergebot")
        self.git_email = os.getenv("GIT_EMAIL", "mergebot@users.noreply.github.com")
        self.repos_dir = Path(os.getenv("REPOS_DIR", "repos")).expanduser()

        self.dedup_capacity = int(os.getenv("DEDUP_CAPACITY", "10000"))
        self.smee_url = os.getenv("SMEE_URL", "").strip()
        self.relay_reconnect_seconds = float(os.getenv("RELAY_RECONNECT_SECONDS", "10"))

        self.github_api_url = os.getenv("GITHUB_API_URL", "https://api.github.com").rstrip("/")
        self.service_version = os.getenv("SERVICE_VERSION", "dev")

        self.max_retries = int(os.getenv("MAX_RETRIES", "3"))
        self.backoff_base_seconds = float(os.getenv("BACKOFF_BASE_SECONDS", "1"))
        self.backoff_factor = float(os.getenv("BACKOFF_FACTOR", "2"))
        self.max_backoff_seconds = int(os.getenv("MAX_BACKOFF_SECONDS", "30"))
        self.ref_propagation_attempts = int(os.getenv("REF_PROPAGATION_ATTEMPTS", "15"))


SETTINGS = Settings()
