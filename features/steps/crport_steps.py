# [TEMPLATE: CUI // SP-CTI]
"""Step definitions for crport translation and verification BDD scenarios."""

import os

from behave import given, then, when

from crport.translation.equivalence_verifier import RunOutcome
from crport.translation.translation_manager import run_batch


class CannedRunner:
    """Stands in for ``crystal run``; answers by case id from the harness header."""

    def __init__(self, outputs=None):
        self.outputs = outputs or {}

    def run(self, files, entry, timeout):
        header = files[entry].splitlines()[1]
        case_id = header.split("harness: ", 1)[1].split(" (", 1)[0]
        return RunOutcome(returncode=0, stdout=self.outputs.get(case_id, "CRPORT:MATCH\n"))


def _construct(context, name):
    for unit in context.result["mapped"]:
        for mc in unit.constructs:
            if mc.node.name == name:
                return mc
    raise AssertionError(f"construct {name} not in mapped output")


@given('a Go file "{name}" containing:')
def step_go_file(context, name):
    """Write a Go source file into the scenario's source tree."""
    with open(os.path.join(context.source_dir, name), "w", encoding="utf-8") as f:
        f.write(context.text + "\n")


@given('the Crystal runner reports a match for every case')
def step_runner_matches(context):
    context.runner = CannedRunner()


@given('the Crystal runner reports "{marker}" with actual "{actual}" for "{case_id}"')
def step_runner_mismatch(context, marker, actual, case_id):
    context.runner = CannedRunner({case_id: f"{marker}\n{actual}\n"})


@when('I run the crport pipeline without verification')
def step_run_without_verification(context):
    context.result = run_batch(context.source_dir, output_dir=context.output_dir,
                               verify_tests=False)


@when('I run the crport pipeline')
def step_run_pipeline(context):
    context.result = run_batch(context.source_dir, output_dir=context.output_dir,
                               runner=context.runner or CannedRunner(),
                               timeout=10)


@then('the batch should succeed')
def step_batch_succeeds(context):
    assert context.result["exit_code"] == 0, context.result["report"].render_text()


@then('the batch should fail')
def step_batch_fails(context):
    assert context.result["exit_code"] == 1


@then('the Crystal file "{name}" should contain "{text}"')
def step_crystal_contains(context, name, text):
    with open(os.path.join(context.output_dir, name), encoding="utf-8") as f:
        content = f.read()
    assert text in content, content


@then('the Crystal file "{name}" should start with the CUI marking')
def step_crystal_cui(context, name):
    with open(os.path.join(context.output_dir, name), encoding="utf-8") as f:
        assert f.readline().strip() == "# CUI // SP-CTI"


@then('the construct "{name}" should have confidence "{tag}"')
def step_construct_confidence(context, name, tag):
    assert _construct(context, name).confidence.value == tag


@then('the report verdict should be "{verdict}"')
def step_report_verdict(context, verdict):
    report = context.result["report"]
    assert report.verdict == verdict, report.render_text()


@then('the report should list a "{kind}" for "{name}"')
def step_report_failure(context, kind, name):
    failures = context.result["report"].failures
    assert any(f["kind"] == kind and f["file"] == name for f in failures), failures


@then('the case "{case_id}" should be "{status}"')
def step_case_status(context, case_id, status):
    statuses = {r.case_id: r.status.value for r in context.result["results"]}
    assert statuses.get(case_id) == status, statuses
