from __future__ import annotations

import allure
import pytest
from conftest import FakeClock

from dab_deploy.orchestrator.errors import StepStateError
from dab_deploy.orchestrator.models import StepEvent, StepStatus
from dab_deploy.orchestrator.tracker import StepTracker

pytestmark = [
    allure.epic("Provisioning Engine"),
    allure.feature("Step Tracking"),
]


def test_begin_and_succeed_record_elapsed_time_and_detail(clock: FakeClock) -> None:
    tracker = StepTracker(clock=clock)

    tracker.begin("Create SQL server", 120)
    clock.sleep(42)
    step = tracker.succeed("sql-dab.database.windows.net")

    assert step.status is StepStatus.SUCCESS
    assert step.elapsed_seconds == 42
    assert step.detail == "sql-dab.database.windows.net"
    assert step.estimate_seconds == 120
    assert tracker.current is None


def test_unmatched_begin_keeps_current_step_for_attribution() -> None:
    tracker = StepTracker()

    tracker.begin("Verify CLI login")
    tracker.succeed()
    tracker.begin("Create resource group")

    assert tracker.current is not None
    assert tracker.current.name == "Create resource group"


def test_begin_while_a_step_is_open_is_rejected() -> None:
    tracker = StepTracker()
    tracker.begin("Create SQL server")

    with pytest.raises(StepStateError, match="still open"):
        tracker.begin("Create SQL database")


@pytest.mark.parametrize("transition", ["succeed", "fail", "retrying"])
def test_transitions_without_an_open_step_are_rejected(transition: str) -> None:
    tracker = StepTracker()

    with pytest.raises(StepStateError):
        getattr(tracker, transition)()


def test_closed_step_cannot_be_closed_again() -> None:
    tracker = StepTracker()
    tracker.begin("Create SQL server")
    tracker.fail("boom")

    with pytest.raises(StepStateError):
        tracker.succeed()


def test_retrying_counts_attempts_and_keeps_step_open() -> None:
    tracker = StepTracker()
    tracker.begin("Grant registry pull")

    tracker.retrying("attempt 1 failed")
    tracker.retrying("attempt 2 failed")

    current = tracker.current
    assert current is not None
    assert current.status is StepStatus.RETRYING
    assert current.attempts == 3
    assert tracker.succeed().attempts == 3


def test_info_annotates_without_changing_status() -> None:
    tracker = StepTracker()
    tracker.begin("Deploy database schema")

    tracker.info("No schema script configured")

    current = tracker.current
    assert current is not None
    assert current.status is StepStatus.STARTED
    assert current.notes == ["No schema script configured"]


def test_every_transition_is_forwarded_to_the_callback() -> None:
    events: list[StepEvent] = []
    tracker = StepTracker(on_step=events.append)

    tracker.begin("Create container app")
    tracker.retrying("throttled")
    tracker.info("still waiting")
    tracker.succeed("ca-dab")

    assert [event.status for event in events] == [
        StepStatus.STARTED,
        StepStatus.RETRYING,
        StepStatus.INFO,
        StepStatus.SUCCESS,
    ]
    assert {event.step for event in events} == {"Create container app"}
    assert events[-1].attempt == 2
    assert events[-1].detail == "ca-dab"


def test_steps_are_listed_in_begin_order() -> None:
    tracker = StepTracker()
    for name in ("one", "two", "three"):
        tracker.begin(name)
        tracker.succeed()

    assert [step.name for step in tracker.steps] == ["one", "two", "three"]
    assert tracker.get("two").status is StepStatus.SUCCESS


def test_resume_returns_a_retrying_step_to_started() -> None:
    events: list[StepEvent] = []
    tracker = StepTracker(on_step=events.append)
    tracker.begin("Grant registry pull")
    tracker.retrying("attempt 1 failed")

    tracker.resume()

    current = tracker.current
    assert current is not None
    assert current.status is StepStatus.STARTED
    assert current.attempts == 2
    assert events[-1].status is StepStatus.STARTED
    assert events[-1].detail == "attempt 2"


def test_resume_requires_a_retrying_step() -> None:
    tracker = StepTracker()
    tracker.begin("Grant registry pull")

    with pytest.raises(StepStateError, match="no step is retrying"):
        tracker.resume()
