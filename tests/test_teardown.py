import pytest

from ppvnet.errors import GenericAPIError, NotFoundError
from ppvnet.lro import LroResult, LroStatus
from ppvnet.teardown import (
    AutoApproveGate, PromptGate, Step, StepSkipped, TeardownSequencer, gate_for,
)


class Recorder:
    def __init__(self):
        self.ran = []

    def ok(self, name, result=None):
        def action():
            self.ran.append(name)
            return result
        return action

    def fail(self, name, error=None):
        def action():
            self.ran.append(name)
            raise error or GenericAPIError(name, "https://example.test", 500, "boom")
        return action


def names(records):
    return [r.name for r in records]


def test_non_fatal_failure_does_not_stop_later_steps():
    rec = Recorder()
    steps = [Step("A", rec.ok("A")), Step("B", rec.fail("B")), Step("C", rec.ok("C"))]

    report = TeardownSequencer(AutoApproveGate()).run(steps)

    assert rec.ran == ["A", "B", "C"]
    assert names(report.successes) == ["A", "C"]
    assert names(report.errors) == ["B"]
    assert report.aborted_at is None
    assert not report.ok


def test_fatal_failure_stops_the_sequence():
    rec = Recorder()
    steps = [Step("A", rec.fail("A"), fatal_if_failed=True), Step("B", rec.ok("B"))]

    report = TeardownSequencer(AutoApproveGate()).run(steps)

    assert rec.ran == ["A"]
    assert names(report.errors) == ["A"]
    assert report.successes == []
    assert report.aborted_at == "A"


def test_force_gate_never_reads_input():
    def no_input(prompt):
        raise AssertionError("input must not be called in force mode")

    rec = Recorder()
    gate = gate_for(True, no_input)
    report = TeardownSequencer(gate).run([Step("A", rec.ok("A"), confirm_required=True)])

    assert isinstance(gate, AutoApproveGate)
    assert names(report.successes) == ["A"]


def test_declined_step_is_skipped_and_not_run():
    rec = Recorder()
    answers = iter(["maybe", "n", "y"])
    steps = [
        Step("A", rec.ok("A"), confirm_required=True, resources=["rg-vnet"]),
        Step("B", rec.ok("B"), confirm_required=True),
    ]

    report = TeardownSequencer(PromptGate(lambda prompt: next(answers))).run(steps)

    assert rec.ran == ["B"]
    assert names(report.skipped) == ["A"]
    assert report.skipped[0].detail == "declined by operator"
    assert names(report.successes) == ["B"]
    assert report.ok


def test_unconfirmed_step_runs_without_prompt():
    rec = Recorder()

    def no_input(prompt):
        raise AssertionError("no prompt expected")

    report = TeardownSequencer(PromptGate(no_input)).run([Step("A", rec.ok("A"))])
    assert names(report.successes) == ["A"]


def test_not_found_counts_as_success():
    rec = Recorder()
    missing = NotFoundError("delete policy", "https://example.test", 404, "gone")
    report = TeardownSequencer(AutoApproveGate()).run([Step("A", rec.fail("A", missing))])

    assert names(report.successes) == ["A"]
    assert "already absent" in report.successes[0].detail


def test_step_skipped_exception_records_skip():
    def action():
        raise StepSkipped("nothing configured")

    report = TeardownSequencer(AutoApproveGate()).run([Step("A", action)])

    assert names(report.skipped) == ["A"]
    assert report.skipped[0].detail == "nothing configured"


def test_lro_results_map_to_outcomes():
    rec = Recorder()
    steps = [
        Step("done", rec.ok("done", LroResult(LroStatus.DONE, "op", detail="deleted"))),
        Step("timeout", rec.ok("timeout", LroResult(LroStatus.TIMED_OUT, "op", detail="may still complete"))),
    ]

    report = TeardownSequencer(AutoApproveGate()).run(steps)

    assert names(report.successes) == ["done"]
    assert names(report.errors) == ["timeout"]
    assert "may still complete" in report.errors[0].detail


def test_dry_run_runs_nothing():
    rec = Recorder()
    steps = [Step("A", rec.ok("A"), resources=["env Fabrikam-Tst"]), Step("B", rec.fail("B"))]

    report = TeardownSequencer(AutoApproveGate(), dry_run=True).run(steps)

    assert rec.ran == []
    assert names(report.skipped) == ["A", "B"]
    assert "Fabrikam-Tst" in report.skipped[0].detail


def test_interrupt_keeps_partial_report():
    rec = Recorder()

    def interrupted():
        raise KeyboardInterrupt

    steps = [Step("A", rec.ok("A")), Step("B", interrupted), Step("C", rec.ok("C"))]
    sequencer = TeardownSequencer(AutoApproveGate())

    with pytest.raises(KeyboardInterrupt):
        sequencer.run(steps)

    assert rec.ran == ["A"]
    assert names(sequencer.report.successes) == ["A"]
    assert names(sequencer.report.errors) == ["B"]
    assert sequencer.report.interrupted
    assert "Interrupted" in sequencer.report.render()


def test_report_to_dict():
    rec = Recorder()
    report = TeardownSequencer(AutoApproveGate()).run([Step("A", rec.ok("A", "removed"))])

    assert report.to_dict() == {
        "ok": True,
        "successes": [{"step": "A", "outcome": "success", "detail": "removed"}],
        "errors": [],
        "skipped": [],
        "aborted_at": None,
        "interrupted": False,
    }


def test_unexpected_exception_is_recorded_and_later_steps_run():
    rec = Recorder()
    steps = [
        Step("A", rec.ok("A")),
        Step("B", rec.fail("B", OSError("permission denied removing .azure/dev"))),
        Step("C", rec.ok("C")),
    ]

    report = TeardownSequencer(AutoApproveGate()).run(steps)

    assert rec.ran == ["A", "B", "C"]
    assert names(report.errors) == ["B"]
    assert report.errors[0].detail == "OSError: permission denied removing .azure/dev"
    assert names(report.successes) == ["A", "C"]


def test_unexpected_exception_in_fatal_step_aborts():
    rec = Recorder()
    steps = [Step("A", rec.fail("A", KeyError("id")), fatal_if_failed=True), Step("B", rec.ok("B"))]

    report = TeardownSequencer(AutoApproveGate()).run(steps)

    assert rec.ran == ["A"]
    assert report.aborted_at == "A"
