from convosync.models.progress import StepFailed, StepSucceeded
from convosync.services.auxiliary import run_auxiliary_step


async def test_successful_step_returns_value() -> None:
    async def reconcile() -> int:
        return 3

    outcome = await run_auxiliary_step("billing", reconcile)

    assert outcome == StepSucceeded(name="billing", value=3)


async def test_failing_step_is_captured() -> None:
    async def reconcile() -> None:
        raise ConnectionError("billing endpoint down")

    outcome = await run_auxiliary_step("billing", reconcile)

    assert isinstance(outcome, StepFailed)
    assert outcome.error == "billing endpoint down"
