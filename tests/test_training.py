import dataclasses

import numpy as np
import pytest

from classifier.errors import InsufficientClassesError, InvalidImageError, TrainingCancelledError
from classifier.manifest import TagManifest
from classifier.model_loader import classify
from training.config import DuplicatePolicy, TrainingConfig
from training.data import Vocabulary, load_manifest
from training.evaluate import compare_with_previous, evaluate_model, per_class_log_loss
from training.runner import train

from conftest import BLUE, GREEN, RED, make_image, write_image


def test_two_sample_manifest_predicts_known_images(toaster_manifest, config, extractor):
    model = train(config=config, extractor=extractor)

    assert model.vocabulary.labels == ("microwave", "toaster")
    toaster = classify(model, make_image(RED, fmt="JPEG"), sample_path="img1.jpg")
    microwave = classify(model, make_image(BLUE, fmt="JPEG"), sample_path="img2.jpg")

    assert toaster.predicted_label == "toaster"
    assert microwave.predicted_label == "microwave"
    assert set(toaster.scores) == {"microwave", "toaster"}
    assert sum(toaster.scores.values()) == pytest.approx(1.0)


def test_manifest_path_argument_overrides_config(toaster_manifest, images_dir, extractor):
    model = train(
        toaster_manifest.path,
        TrainingConfig(images_dir=images_dir, evaluate=False),
        extractor,
    )
    assert len(model.vocabulary) == 2


def test_single_label_is_rejected(images_dir, manifest, config, extractor):
    write_image(images_dir, "a.png", RED)
    write_image(images_dir, "b.png", RED, variant=1)
    manifest.append("a.png", "toaster")
    manifest.append("b.png", "toaster")

    with pytest.raises(InsufficientClassesError) as excinfo:
        train(config=config, extractor=extractor)
    assert excinfo.value.labels == ["toaster"]


def test_placeholders_only_is_rejected(images_dir, manifest, config, extractor):
    write_image(images_dir, "a.png", RED)
    manifest.append_placeholder("a.png")

    with pytest.raises(InsufficientClassesError):
        train(config=config, extractor=extractor)


def test_empty_manifest_is_rejected(config, extractor):
    with pytest.raises(InsufficientClassesError):
        train(config=config, extractor=extractor)


def _colour_set(images_dir, manifest):
    for i in range(3):
        write_image(images_dir, f"red{i}.png", RED, variant=i)
        write_image(images_dir, f"blue{i}.png", BLUE, variant=i)
        write_image(images_dir, f"green{i}.png", GREEN, variant=i)
        manifest.append(f"red{i}.png", "toaster")
        manifest.append(f"blue{i}.png", "microwave")
        manifest.append(f"green{i}.png", "kettle")


def test_retraining_same_manifest_gives_same_predictions(images_dir, manifest, config, extractor):
    _colour_set(images_dir, manifest)
    probes = [make_image(c, variant=5) for c in (RED, BLUE, GREEN)]

    first = train(config=config, extractor=extractor)
    second = train(config=config, extractor=extractor)

    assert first.vocabulary == second.vocabulary
    np.testing.assert_allclose(first.predict_proba(probes), second.predict_proba(probes), atol=1e-6)


def test_manifest_order_does_not_change_predictions(images_dir, manifest, config, extractor):
    _colour_set(images_dir, manifest)
    entries = manifest.snapshot()
    probes = [make_image(c, variant=4) for c in (RED, BLUE, GREEN)]

    forward = train(config=config, extractor=extractor, entries=entries)
    backward = train(config=config, extractor=extractor, entries=tuple(reversed(entries)))

    assert forward.vocabulary == backward.vocabulary
    assert (
        [classify(forward, p).predicted_label for p in probes]
        == [classify(backward, p).predicted_label for p in probes]
        == ["toaster", "microwave", "kettle"]
    )


def test_vocabulary_is_exactly_the_manifest_labels(images_dir, manifest, config, extractor):
    _colour_set(images_dir, manifest)
    model = train(config=config, extractor=extractor)

    assert model.vocabulary.labels == ("kettle", "microwave", "toaster")
    assert model.classifier.coef_.shape[0] == 3


def test_missing_file_is_skipped_when_lenient(toaster_manifest, images_dir, config, extractor):
    toaster_manifest.append("ghost.jpg", "blender")
    (images_dir / "corrupt.png").write_bytes(b"not an image")
    toaster_manifest.append("corrupt.png", "blender")

    samples = load_manifest(toaster_manifest.path, config)
    assert samples.skipped == ["ghost.jpg", "corrupt.png"]
    assert samples.vocabulary.labels == ("microwave", "toaster")

    model = train(config=config, extractor=extractor)
    assert "blender" not in model.vocabulary


def test_missing_file_raises_when_strict(toaster_manifest, config, extractor):
    toaster_manifest.append("ghost.jpg", "blender")
    strict = dataclasses.replace(config, strict=True)

    with pytest.raises(InvalidImageError) as excinfo:
        train(config=strict, extractor=extractor)
    assert excinfo.value.path == "ghost.jpg"


def test_duplicate_policy_decides_vocabulary(toaster_manifest, images_dir, config):
    write_image(images_dir, "img3.png", GREEN)
    toaster_manifest.append("img3.png", "blender")
    toaster_manifest.append("img3.png", "toaster")

    latest = load_manifest(toaster_manifest.path, config)
    keep_all = load_manifest(
        toaster_manifest.path,
        dataclasses.replace(config, duplicate_policy=DuplicatePolicy.KEEP_ALL),
    )

    assert latest.vocabulary.labels == ("microwave", "toaster")
    assert len(latest) == 3
    assert keep_all.vocabulary.labels == ("blender", "microwave", "toaster")
    assert len(keep_all) == 4


def test_invalid_l2_strength_rejected():
    with pytest.raises(ValueError):
        TrainingConfig(l2_strength=0)


# ── Vocabulary ──────────────────────────────────────────────────────────────

def test_vocabulary_keys_are_sorted_positions():
    vocab = Vocabulary.from_labels(["toaster", "microwave", "toaster", "kettle"])

    assert vocab.labels == ("kettle", "microwave", "toaster")
    assert [vocab.key_of(label) for label in vocab] == [0, 1, 2]
    assert vocab.label_of(1) == "microwave"
    with pytest.raises(KeyError):
        vocab.key_of("blender")


# ── Evaluation ──────────────────────────────────────────────────────────────

def _held_out(images_dir, rows):
    held_out = TagManifest(images_dir / "test-tags.tsv")
    for name, colour, label in rows:
        write_image(images_dir, name, colour, variant=3)
        held_out.append(name, label)
    return held_out


def test_evaluation_reports_log_loss_per_class(toaster_manifest, images_dir, config, extractor, tmp_path):
    _held_out(images_dir, [
        ("t1.png", RED, "toaster"),
        ("m1.png", BLUE, "microwave"),
        ("x1.png", GREEN, "blender"),
    ])
    model = train(config=config, extractor=extractor)

    metrics = model.metrics
    assert metrics["num_samples"] == 2
    assert metrics["skipped"] == 1
    assert metrics["accuracy"] == 1.0
    assert metrics["log_loss"] >= 0
    assert [c["label"] for c in metrics["per_class_log_loss"]] == ["microwave", "toaster"]
    assert all(c["log_loss"] is not None for c in metrics["per_class_log_loss"])


def test_class_without_held_out_samples_reports_none(toaster_manifest, images_dir, config, extractor, tmp_path):
    _held_out(images_dir, [("t1.png", RED, "toaster")])
    model = train(config=dataclasses.replace(config, evaluate=False), extractor=extractor)
    test_samples = load_manifest(images_dir / "test-tags.tsv", config, require_classes=False)

    out = tmp_path / "report"
    out.mkdir()
    metrics = evaluate_model(model, test_samples, out)

    per_class = {c["label"]: c["log_loss"] for c in metrics["per_class_log_loss"]}
    assert per_class["microwave"] is None
    assert per_class["toaster"] is not None
    assert (out / "metrics.json").exists()
    assert (out / "confusion_matrix.png").exists()
    assert (out / "classification_report.txt").exists()


def test_evaluation_calls_checkpoint_per_image(toaster_manifest, images_dir, config, extractor):
    _held_out(images_dir, [("t1.png", RED, "toaster"), ("m1.png", BLUE, "microwave")])
    model = train(config=dataclasses.replace(config, evaluate=False), extractor=extractor)
    test_samples = load_manifest(images_dir / "test-tags.tsv", config, require_classes=False)

    calls = []

    def stop_on_second():
        calls.append(1)
        if len(calls) == 2:
            raise TrainingCancelledError("stopped", operation="train")

    with pytest.raises(TrainingCancelledError):
        evaluate_model(model, test_samples, checkpoint=stop_on_second)
    assert len(calls) == 2


def test_per_class_log_loss_values():
    vocab = Vocabulary(("a", "b"))
    proba = np.array([[0.5, 0.5], [0.25, 0.75]])
    result = per_class_log_loss(np.array([0, 1]), proba, vocab)

    assert result[0] == {"label": "a", "log_loss": round(-np.log(0.5), 4)}
    assert result[1] == {"label": "b", "log_loss": round(-np.log(0.75), 4)}


def test_comparison_prefers_lower_log_loss(tmp_path):
    prev = tmp_path / "metrics.json"
    prev.write_text('{"log_loss": 0.5}', encoding="utf-8")

    better = compare_with_previous({"log_loss": 0.3}, prev, tmp_path)
    worse = compare_with_previous({"log_loss": 0.7}, prev, tmp_path)
    first = compare_with_previous({"log_loss": 0.7}, None, tmp_path)

    assert better["recommendation"] == "promote"
    assert better["log_loss_delta"] == -0.2
    assert worse["recommendation"] == "keep_previous"
    assert first == {
        "has_previous": False,
        "new_log_loss": 0.7,
        "recommendation": "promote",
        "reason": "No previous model to compare against.",
    }
    assert (tmp_path / "comparison.json").exists()
