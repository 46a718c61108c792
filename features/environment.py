# [TEMPLATE: CUI // SP-CTI]
"""Behave environment configuration for crport BDD tests."""

import os
import shutil
import sys
import tempfile

# Step modules import crport, and they load before before_all runs
PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)


def before_all(context):
    """Set up global test context."""
    context.project_root = PROJECT_ROOT


def before_scenario(context, scenario):
    """Give every scenario its own scratch directory."""
    context.result = None
    context.runner = None
    context.workdir = tempfile.mkdtemp(prefix="crport-bdd-")
    context.source_dir = os.path.join(context.workdir, "src")
    context.output_dir = os.path.join(context.workdir, "out")
    os.makedirs(context.source_dir)


def after_scenario(context, scenario):
    """Remove the scratch directory."""
    shutil.rmtree(context.workdir, ignore_errors=True)
