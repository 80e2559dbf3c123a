"""Service configuration: all settings from environment variables."""
from __future__ import annotations

import os
from pathlib import Path

_TRUTHY = {"1", "true", "yes", "on", "y"}


def _env_flag(name: str, default: str = "0") -> bool:
    return os.environ.get(name, default).strip().lower() in _TRUTHY


# ── Core paths ────────────────────────────────────────────────────────────────
KB_DATA_DIR      = Path(os.environ.get("KB_DATA_DIR", str(Path.home() / ".qnakb"))).expanduser()
ENTRIES_DB_PATH  = Path(os.environ.get("KB_ENTRIES_DB_PATH", str(KB_DATA_DIR / "entries.db"))).expanduser()
MODELS_DIR       = Path(os.environ.get("KB_MODELS_DIR", str(KB_DATA_DIR / "models"))).expanduser()
RUNS_PATH        = Path(os.environ.get("KB_RUNS_PATH", str(KB_DATA_DIR / "training_runs.json"))).expanduser()

# ── Service ───────────────────────────────────────────────────────────────────
HOST = os.environ.get("KB_HOST", "127.0.0.1")
PORT = int(os.environ.get("KB_PORT", "7430"))
TEST_MODE = _env_flag("KB_TEST_MODE")
LOG_LEVEL = os.environ.get("KB_LOG_LEVEL", "INFO").strip().upper() or "INFO"

# ── Training ──────────────────────────────────────────────────────────────────
# BP_NLU_DISABLE_TRAINING is honoured for nodes migrated from the bot platform.
DISABLE_TRAINING = _env_flag("KB_DISABLE_TRAINING") or _env_flag("BP_NLU_DISABLE_TRAINING")
TRAINING_MAX_SECONDS  = float(os.environ.get("KB_TRAINING_MAX_SECONDS", "3600"))  # 0 disables
TRAIN_CHECKPOINT_EVERY = int(os.environ.get("KB_TRAIN_CHECKPOINT_EVERY", "25"))
MAX_TRAINING_RUNS     = int(os.environ.get("KB_MAX_TRAINING_RUNS", "50"))

# ── Prediction ────────────────────────────────────────────────────────────────
PREDICT_TOP_K = int(os.environ.get("KB_PREDICT_TOP_K", "10"))
EMBEDDING_DIM = int(os.environ.get("KB_EMBEDDING_DIM", "512"))
DEFAULT_LANG  = os.environ.get("KB_DEFAULT_LANG", "en").strip().lower() or "en"

# ── Ensure runtime dirs exist ────────────────────────────────────────────────
for _d in (KB_DATA_DIR, MODELS_DIR, ENTRIES_DB_PATH.parent, RUNS_PATH.parent):
    try:
        _d.mkdir(parents=True, exist_ok=True)
    except OSError:
        # Some execution sandboxes cannot write outside the workspace;
        # stores create their own directories on first use.
        pass
