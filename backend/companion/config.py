from pathlib import Path

from pydantic_settings import BaseSettings

from companion.agent import constants

ROOT_DIR = Path(__file__).resolve().parent.parent.parent


class Settings(BaseSettings):
    # Empty key disables the chat runtime; background agents still run.
    OPENROUTER_API_KEY: str = ""
    OPENROUTER_BASE_URL: str = "https://openrouter.ai/api/v1"
    OPENROUTER_MODEL: str = "openai/gpt-4o-mini"
    LLM_TEMPERATURE: float = 0.7
    LLM_MAX_TOKENS: int = 2048

    ROOT_DIR: Path = ROOT_DIR
    DATA_DIR: Path = ROOT_DIR / "data"
    DB_PATH: Path = ROOT_DIR / "data" / "companion.db"

    # Agent system
    TICK_INTERVAL_SECONDS: float = constants.DEFAULT_TICK_INTERVAL_SECONDS
    DEFAULT_AGENT_TIMEOUT_MS: int = constants.DEFAULT_AGENT_TIMEOUT_MS
    DEFAULT_AGENT_MAX_STEPS: int = constants.DEFAULT_AGENT_MAX_STEPS
    RUNTIME_MAX_STEPS: int = constants.DEFAULT_RUNTIME_MAX_STEPS
    DISPATCH_QUEUE_SIZE: int = constants.DEFAULT_DISPATCH_QUEUE_SIZE
    EXECUTION_HISTORY_SIZE: int = constants.DEFAULT_EXECUTION_HISTORY_SIZE
    AUDIT_ENABLED: bool = True

    model_config = {
        "env_file": str(ROOT_DIR / ".env"),
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    @property
    def user_files_dir(self) -> Path:
        return self.DATA_DIR / "user_files"


settings = Settings()

# Ensure data dir exists
settings.DATA_DIR.mkdir(parents=True, exist_ok=True)
