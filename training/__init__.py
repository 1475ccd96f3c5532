"""
taglearn Training Pipeline
==========================

Transfer-learning retraining system that:

1. Reads labeled samples from the tag manifest (``path<TAB>label``).
2. Embeds every image with a fixed, pretrained InceptionV3 base.
3. Fits a maximum-entropy (logistic regression) head from scratch.
4. Evaluates on the held-out manifest (log-loss, per-class log-loss).
5. Saves the head + vocabulary under ``models/versions/<run_name>/``.
6. Optionally publishes the new model for live inference.

Package layout
--------------
config.py     – ``TrainingConfig`` / ``ExtractorSettings`` dataclasses, paths.
features.py   – Feature extractor and its sklearn adapter.
data.py       – Manifest entries → in-memory samples + vocabulary.
train.py      – Classifier pipeline, ``TrainedModel``, artefact persistence.
evaluate.py   – Held-out metrics, confusion matrix, run comparison.
runner.py     – ``train`` and the tracked ``run_training`` orchestrator.
tasks.py      – Background retrain jobs (timeout, cancellation).
"""
