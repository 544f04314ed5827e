import logging
import os

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


# VLLM configuration (local inference, priority over OpenRouter)
VLLM_BASE_URL = os.getenv("VLLM_BASE_URL", "http://localhost:8000/v1")
USE_VLLM = _env_bool("USE_VLLM", "false")
VLLM_MODEL = os.getenv("VLLM_MODEL", "")  # Model for VLLM (required if USE_VLLM=true)
VLLM_API_KEY = os.getenv("VLLM_API_KEY", "EMPTY")

# OpenRouter configuration (cloud inference fallback)
OPENROUTER_API_KEY = os.getenv("OPENROUTER_API_KEY", "")
OPENROUTER_MODEL = os.getenv("OPENROUTER_MODEL", "")  # Model for OpenRouter

# Legacy: AGENT_MODEL (for backward compatibility)
AGENT_MODEL_LEGACY = os.getenv("AGENT_MODEL", "")

PROVIDER_DEFAULT = "vllm" if USE_VLLM else "openrouter"


def get_model_name(provider: str | None = None) -> str:
    """Get model name based on configuration.

    Priority:
    1. VLLM_MODEL for the vllm provider, OPENROUTER_MODEL for openrouter
    2. AGENT_MODEL (legacy) if set
    3. Default: openai/gpt-oss-120b for VLLM, openai/gpt-4o for OpenRouter

    Args:
        provider: 'vllm' or 'openrouter' (default: PROVIDER_DEFAULT)

    Returns:
        Model name to use

    """
    provider = provider or PROVIDER_DEFAULT
    if provider == "vllm":
        if VLLM_MODEL:
            return VLLM_MODEL
        if AGENT_MODEL_LEGACY:
            return AGENT_MODEL_LEGACY
        return "openai/gpt-oss-120b"  # Default for VLLM
    if OPENROUTER_MODEL:
        return OPENROUTER_MODEL
    if AGENT_MODEL_LEGACY:
        return AGENT_MODEL_LEGACY
    return "openai/gpt-4o"  # Default for OpenRouter


DEFAULT_MODEL = get_model_name()

# Agentic loop limits
MAX_ITERATIONS = int(os.getenv("AGENT_MAX_ITERATIONS", "10"))
FORCE_FINAL_ANSWER = _env_bool("AGENT_FORCE_FINAL_ANSWER", "true")
LLM_TIMEOUT_SECONDS = float(os.getenv("LLM_TIMEOUT_SECONDS", "60"))
TOOL_TIMEOUT_SECONDS = float(os.getenv("TOOL_TIMEOUT_SECONDS", "60"))

# Recovery manager ceilings
RECOVERY_ENABLED = _env_bool("RECOVERY_ENABLED", "true")
RECOVERY_MAX_ATTEMPTS = int(os.getenv("RECOVERY_MAX_ATTEMPTS", "3"))
RECOVERY_TIMEOUT_SECONDS = float(os.getenv("RECOVERY_TIMEOUT_SECONDS", "30"))
RECOVERY_VALIDATE = _env_bool("RECOVERY_VALIDATE", "true")
RECOVERY_POLICY_FILE = os.getenv("RECOVERY_POLICY_FILE", "")

# Project root: directory containing agentloop/ package (works from any cwd)
PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
LOG_FILE = os.path.join(PROJECT_ROOT, "logs", "agentloop.log")
ACTIVITY_LOG_FILE = os.path.join(PROJECT_ROOT, "logs", "activity.log")
TELEMETRY_DB_PATH = os.getenv(
    "TELEMETRY_DB_PATH", os.path.join(PROJECT_ROOT, "data", "telemetry.db")
)


# Read version from VERSION file
def _get_version() -> str:
    version_file = os.path.join(PROJECT_ROOT, "VERSION")
    try:
        with open(version_file, "r") as f:
            return f.read().strip()
    except FileNotFoundError:
        return "0.0.0"  # Fallback if VERSION file doesn't exist


VERSION = _get_version()


def setup_logging(level: int = logging.INFO) -> None:
    os.makedirs(os.path.dirname(LOG_FILE), exist_ok=True)
    logging.basicConfig(
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        level=level,
        handlers=[
            logging.StreamHandler(),
            logging.FileHandler(LOG_FILE, encoding="utf-8"),
        ],
    )
