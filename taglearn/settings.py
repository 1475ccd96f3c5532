"""
Django settings for the taglearn project.

Only the pieces the classifier app and the training package need are
configured here: the ORM (relational mirror), logging, and the on-disk
layout for images, manifests and model artefacts.

Directory conventions
---------------------
::

    <TAGLEARN_DATA_DIR>/
    ├── assets/
    │   └── images/                   ← Managed image store
    │       ├── tags.tsv              ← Training manifest (path<TAB>label)
    │       └── test-tags.tsv         ← Held-out manifest for evaluation
    ├── models/
    │   ├── inception_v3_weights_tf_dim_ordering_tf_kernels_notop.h5
    │   └── versions/                 ← One folder per training run
    ├── logs/
    │   └── reconciliation.jsonl      ← Manifest / mirror divergence log
    └── db.sqlite3
"""

import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent
DATA_DIR = Path(os.environ.get("TAGLEARN_DATA_DIR", str(BASE_DIR)))

# ── Storage layout ──────────────────────────────────────────────────────────

ASSETS_ROOT = DATA_DIR / "assets"
IMAGES_ROOT = ASSETS_ROOT / "images"
TRAIN_TAGS_PATH = IMAGES_ROOT / "tags.tsv"
TEST_TAGS_PATH = IMAGES_ROOT / "test-tags.tsv"
MODELS_ROOT = DATA_DIR / "models"
RECONCILIATION_LOG_PATH = DATA_DIR / "logs" / "reconciliation.jsonl"

# ── Ingestion ───────────────────────────────────────────────────────────────

MAX_UPLOAD_SIZE = 10 * 1024 * 1024  # 10 MB
MANIFEST_WRITE_ATTEMPTS = int(os.environ.get("TAGLEARN_MANIFEST_WRITE_ATTEMPTS", "3"))
MIRROR_WRITE_ATTEMPTS = int(os.environ.get("TAGLEARN_MIRROR_WRITE_ATTEMPTS", "2"))
WRITE_BACKOFF_SECONDS = float(os.environ.get("TAGLEARN_WRITE_BACKOFF_SECONDS", "0.2"))

# ── Django ──────────────────────────────────────────────────────────────────

SECRET_KEY = os.environ.get("TAGLEARN_SECRET_KEY", "taglearn-dev-only")
DEBUG = os.environ.get("TAGLEARN_DEBUG", "false").lower() == "true"
ALLOWED_HOSTS = ["*"]

INSTALLED_APPS = [
    "classifier",
]

DATABASES = {
    "default": {
        "ENGINE": "django.db.backends.sqlite3",
        "NAME": os.environ.get("TAGLEARN_DB_PATH", str(DATA_DIR / "db.sqlite3")),
        "OPTIONS": {"timeout": 20},
    }
}

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"
USE_TZ = True
TIME_ZONE = "UTC"

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "taglearn": {
            "format": "%(asctime)s %(levelname)s [%(name)s] %(message)s",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "taglearn",
        },
    },
    "root": {
        "handlers": ["console"],
        "level": os.environ.get("TAGLEARN_LOG_LEVEL", "INFO"),
    },
}
