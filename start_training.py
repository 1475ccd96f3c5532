"""
Launch a training run from the tag manifest and print the outcome.

The previous active model is left untouched unless --promote is given.

Run with: python start_training.py [--strict] [--keep-duplicates] [--promote]
"""
import argparse
import os
import sys

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "taglearn.settings")
os.environ.setdefault("TF_CPP_MIN_LOG_LEVEL", "1")

import django; django.setup()

from django.core.management import call_command

from classifier.errors import TagLearnError
from training.config import DuplicatePolicy, TrainingConfig
from training.runner import run_training

parser = argparse.ArgumentParser(description=__doc__.strip().splitlines()[0])
parser.add_argument("--strict", action="store_true", help="fail on unreadable manifest entries")
parser.add_argument("--keep-duplicates", action="store_true",
                    help="train on every labeled line instead of the latest per path")
parser.add_argument("--promote", action="store_true", help="publish the model if not worse")
parser.add_argument("--notes", default="")
args = parser.parse_args()

call_command("migrate", run_syncdb=True, verbosity=0)

config = TrainingConfig(
    strict=args.strict,
    duplicate_policy=DuplicatePolicy.KEEP_ALL if args.keep_duplicates else DuplicatePolicy.LATEST,
    auto_promote=args.promote,
    notes=args.notes,
)

print("=" * 60)
print("STARTING TRAINING RUN")
print("=" * 60)
print(f"  Manifest        : {config.resolve_manifest_path()}")
print(f"  Held-out        : {config.resolve_test_manifest_path()}")
print(f"  Duplicate policy: {config.duplicate_policy.value}")
print(f"  Strict          : {config.strict}")
print(f"  Auto promote    : {config.auto_promote}")
print("=" * 60)

try:
    run, model = run_training(config)
except TagLearnError as exc:
    print(f"TRAINING FAILED: {exc}")
    sys.exit(1)

print()
print("=" * 60)
print(f"RUN COMPLETE: {run.run_name}")
print(f"  Vocabulary : {', '.join(model.vocabulary)}")
print(f"  Log-loss   : {run.log_loss}")
for entry in run.metrics_summary.get("per_class_log_loss", []):
    print(f"    {entry['label']:<20} {entry['log_loss']}")
print(f"  Accuracy   : {run.accuracy}")
print(f"  Model saved: {run.model_path}")
print(f"  Active     : {run.is_active_model}")
print("=" * 60)
