import pytest

from core.state import ENGINE_TRANSITIONS, EngineState, EngineStatus, LoadProgress


class TestEngineTransitions:
    def test_all_states_in_transition_table(self):
        for status in EngineStatus:
            assert status in ENGINE_TRANSITIONS

    def test_lifecycle_happy_path(self):
        state = EngineState()
        assert state.status == EngineStatus.UNINITIALIZED
        state = state.transition(EngineStatus.LOADING)
        state = state.transition(EngineStatus.READY)
        state = state.transition(EngineStatus.GENERATING)
        state = state.transition(EngineStatus.READY)
        assert state.status == EngineStatus.READY

    def test_error_then_retry(self):
        state = EngineState().transition(EngineStatus.LOADING)
        state = state.transition(EngineStatus.ERROR, "network timeout")
        assert state.message == "network timeout"
        assert state.can_retry
        state = state.transition(EngineStatus.LOADING)
        assert state.message == ""

    @pytest.mark.parametrize(
        "source,target",
        [
            (EngineStatus.UNINITIALIZED, EngineStatus.READY),
            (EngineStatus.UNINITIALIZED, EngineStatus.GENERATING),
            (EngineStatus.READY, EngineStatus.ERROR),
            (EngineStatus.GENERATING, EngineStatus.ERROR),
            (EngineStatus.ERROR, EngineStatus.READY),
            (EngineStatus.LOADING, EngineStatus.GENERATING),
            (EngineStatus.LOADING, EngineStatus.LOADING),
            (EngineStatus.READY, EngineStatus.LOADING),
            (EngineStatus.GENERATING, EngineStatus.LOADING),
        ],
    )
    def test_illegal_transition_raises(self, source, target):
        with pytest.raises(RuntimeError, match="Illegal engine transition"):
            EngineState(status=source).transition(target)

    def test_message_only_kept_for_error(self):
        state = EngineState(status=EngineStatus.LOADING).transition(EngineStatus.READY, "ignored")
        assert state.message == ""

    def test_can_send_only_when_ready(self):
        for status in EngineStatus:
            assert EngineState(status=status).can_send == (status == EngineStatus.READY)


class TestLoadProgress:
    def test_fraction_is_clamped(self):
        assert LoadProgress("x", 1.7).fraction == 1.0
        assert LoadProgress("x", -0.2).fraction == 0.0

    def test_percent(self):
        assert LoadProgress("Fetching weights", 0.3).percent == 30
        assert LoadProgress("Ready", 1.0).percent == 100

    def test_non_numeric_fraction_defaults_to_zero(self):
        assert LoadProgress("x", "abc").fraction == 0.0
