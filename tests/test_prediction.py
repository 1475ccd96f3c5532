import dataclasses

import numpy as np
import pytest

from classifier.errors import InvalidImageError, UnknownVocabularyError
from classifier.model_loader import Prediction, classify, get_active_model, load_model, publish_model
from training.data import Vocabulary
from training.runner import train
from training.train import CLASSES_FILE, CLASSIFIER_FILE, EXTRACTOR_FILE, load_trained_model, save_model

from conftest import BLUE, RED, make_image


@pytest.fixture
def model(toaster_manifest, config, extractor):
    return train(config=config, extractor=extractor)


def test_prediction_scores_cover_vocabulary(model):
    prediction = classify(model, make_image(RED), sample_path="uploads/new.png")

    assert isinstance(prediction, Prediction)
    assert list(prediction.scores) == list(model.vocabulary.labels)
    assert sum(prediction.scores.values()) == pytest.approx(1.0)
    assert all(0.0 <= s <= 1.0 for s in prediction.scores.values())
    assert prediction.predicted_label == "toaster"
    assert prediction.confidence == max(prediction.scores.values())
    assert prediction.to_dict()["sample_path"] == "uploads/new.png"


def test_classify_does_not_touch_manifest(model, toaster_manifest):
    before = toaster_manifest.path.read_bytes()
    classify(model, make_image(BLUE))
    assert toaster_manifest.path.read_bytes() == before


def test_empty_vocabulary_is_rejected(model):
    broken = dataclasses.replace(model, vocabulary=Vocabulary(()))
    with pytest.raises(UnknownVocabularyError):
        classify(broken, make_image(RED))


def test_vocabulary_head_mismatch_is_rejected(model):
    broken = dataclasses.replace(model, vocabulary=Vocabulary(("a", "b", "c")))
    with pytest.raises(UnknownVocabularyError):
        classify(broken, make_image(RED))


def test_no_model_is_rejected():
    with pytest.raises(UnknownVocabularyError):
        classify(None, make_image(RED))


def test_invalid_image_is_rejected(model):
    with pytest.raises(InvalidImageError):
        classify(model, b"\x00\x01\x02", sample_path="junk.png")


def test_publish_swaps_active_model(model):
    assert get_active_model() is None

    publish_model(model)
    in_flight = get_active_model()
    replacement = dataclasses.replace(model, run_name="next")
    publish_model(replacement)

    assert get_active_model() is replacement
    # A caller holding the old model can still use it.
    assert classify(in_flight, make_image(BLUE)).predicted_label == "microwave"


def test_saved_model_reloads_with_same_scores(model, extractor, tmp_path):
    out = save_model(model, tmp_path / "model_x")
    assert {p.name for p in out.iterdir()} >= {CLASSIFIER_FILE, CLASSES_FILE, EXTRACTOR_FILE}

    reloaded = load_model(out, extractor=extractor)

    assert get_active_model() is reloaded
    assert reloaded.run_name == "model_x"
    assert reloaded.vocabulary == model.vocabulary
    probes = [make_image(RED, variant=2), make_image(BLUE, variant=2)]
    np.testing.assert_allclose(reloaded.predict_proba(probes), model.predict_proba(probes))


def test_reload_rebuilds_extractor_settings(model, tmp_path):
    out = save_model(model, tmp_path / "model_y")
    reloaded = load_trained_model(out, extractor=None)

    assert reloaded.extractor.settings == model.extractor.settings
