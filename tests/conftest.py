"""
Shared fixtures.

Django is configured against a throw-away data directory and SQLite file
before any test module imports project code.  Feature extraction uses a
tiny average-pooling Keras backbone on 32×32 inputs instead of
InceptionV3, so tests need no downloaded weights and run in seconds;
solid-colour images give linearly separable embeddings.
"""

import io
import os
import tempfile
from pathlib import Path

_DATA_DIR = Path(tempfile.mkdtemp(prefix="taglearn-tests-"))
os.environ["TAGLEARN_DATA_DIR"] = str(_DATA_DIR)
os.environ["TAGLEARN_DB_PATH"] = str(_DATA_DIR / "test.sqlite3")
os.environ["DJANGO_SETTINGS_MODULE"] = "taglearn.settings"
os.environ.setdefault("TF_CPP_MIN_LOG_LEVEL", "2")

import django  # noqa: E402

django.setup()

from django.core.management import call_command  # noqa: E402

call_command("migrate", run_syncdb=True, verbosity=0)

import pytest  # noqa: E402
import tensorflow as tf  # noqa: E402
from PIL import Image  # noqa: E402

from classifier.ingestion import IngestionWorkflow  # noqa: E402
from classifier.manifest import TagManifest  # noqa: E402
from classifier.model_loader import publish_model  # noqa: E402
from classifier.models import ImagePrediction, ImageSample, LabelCorrection, TrainingRun  # noqa: E402
from classifier.reconcile import ReconciliationLog  # noqa: E402
from training.config import ExtractorSettings, TrainingConfig  # noqa: E402
from training.features import FeatureExtractor  # noqa: E402

RED = (220, 30, 30)
BLUE = (30, 30, 220)
GREEN = (30, 200, 40)

TINY_SETTINGS = ExtractorSettings(image_size=(32, 32))


def build_tiny_backbone():
    return tf.keras.Sequential([
        tf.keras.layers.Input(shape=(32, 32, 3)),
        tf.keras.layers.AveragePooling2D(pool_size=8),
        tf.keras.layers.Flatten(),
    ])


def make_image(color, size=(40, 30), fmt="PNG", variant=0) -> bytes:
    """Solid-colour image; *variant* shifts the colour slightly."""
    shade = tuple(max(0, min(255, c + (variant * 7) % 30 - 15)) for c in color)
    img = Image.new("RGB", size, shade)
    buf = io.BytesIO()
    img.save(buf, format=fmt)
    return buf.getvalue()


def write_image(images_dir: Path, name: str, color, variant=0) -> bytes:
    fmt = "JPEG" if name.lower().endswith((".jpg", ".jpeg")) else "PNG"
    data = make_image(color, fmt=fmt, variant=variant)
    images_dir.mkdir(parents=True, exist_ok=True)
    (images_dir / name).write_bytes(data)
    return data


@pytest.fixture(scope="session")
def extractor():
    return FeatureExtractor(TINY_SETTINGS, backbone=build_tiny_backbone())


@pytest.fixture(autouse=True)
def clean_db():
    """Empty all tables and the active model slot around each test."""
    yield
    LabelCorrection.objects.all().delete()
    ImagePrediction.objects.all().delete()
    ImageSample.objects.all().delete()
    TrainingRun.objects.all().delete()
    publish_model(None)


@pytest.fixture
def images_dir(tmp_path):
    path = tmp_path / "images"
    path.mkdir()
    return path


@pytest.fixture
def manifest(images_dir):
    return TagManifest(images_dir / "tags.tsv")


@pytest.fixture
def config(images_dir, manifest):
    return TrainingConfig(
        manifest_path=manifest.path,
        images_dir=images_dir,
        test_manifest_path=images_dir / "test-tags.tsv",
    )


@pytest.fixture
def toaster_manifest(images_dir, manifest):
    """The two-sample manifest: img1.jpg → toaster, img2.jpg → microwave."""
    write_image(images_dir, "img1.jpg", RED)
    write_image(images_dir, "img2.jpg", BLUE)
    manifest.append("img1.jpg", "toaster")
    manifest.append("img2.jpg", "microwave")
    return manifest


@pytest.fixture
def reconciliation_log(tmp_path):
    return ReconciliationLog(tmp_path / "logs" / "reconciliation.jsonl")


@pytest.fixture
def workflow(manifest, images_dir, reconciliation_log):
    return IngestionWorkflow(
        manifest=manifest,
        images_dir=images_dir,
        reconciliation_log=reconciliation_log,
        backoff_seconds=0,
    )
