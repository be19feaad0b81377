"""Tests for request parsing and the status document builders."""
from __future__ import annotations

from datetime import datetime, timezone

import pytest

from orchestra.errors import ValidationError
from orchestra.models.requests import (
    INVALID_USER_ID_MESSAGE,
    MAX_USER_ID_LENGTH,
    MISSING_USER_ID_MESSAGE,
    USER_ID_TOO_LONG_MESSAGE,
    GenerationRequest,
    parse_generation_request,
)
from orchestra.models.status import (
    OrchestrationStatus,
    apply_merge,
    done_update,
    error_update,
    initial_status,
    step_update,
)
from orchestra.core.state_machine import PipelineStep


# ---------------------------------------------------------------------------
# parse_generation_request
# ---------------------------------------------------------------------------


class TestParseGenerationRequest:

    def test_defaults_applied(self) -> None:
        req = parse_generation_request({"userId": "u1"})
        assert req.user_id == "u1"
        assert req.key == "C"
        assert req.scale == "major"
        assert req.tempo == 120
        assert req.mood == "N/A"
        assert req.octave_range == []
        assert req.beat == "4/4"
        assert req.user_file_name is None

    def test_full_payload(self) -> None:
        req = parse_generation_request({
            "userId": "u1",
            "key": "A",
            "scale": "minor",
            "tempo": 90,
            "mood": "Dark",
            "genre": "Ambient",
            "phraseType": "Melody",
            "voiceType": "Piano",
            "octaveRange": ["C3", "C5"],
            "midiLength": "45",
            "beat": "3/4",
            "userFileName": "My Song",
        })
        assert req.phrase_type == "Melody"
        assert req.voice_type == "Piano"
        assert req.octave_range == ["C3", "C5"]
        assert req.max_duration_seconds == 45
        assert req.user_file_name == "My Song"

    @pytest.mark.parametrize("payload", [{}, {"userId": ""}, {"userId": "   "}, {"userId": None}])
    def test_missing_user_id(self, payload: dict[str, object]) -> None:
        with pytest.raises(ValidationError) as exc_info:
            parse_generation_request(payload)
        assert str(exc_info.value) == MISSING_USER_ID_MESSAGE

    @pytest.mark.parametrize("user_id", ["a/b", "..", "."])
    def test_path_like_user_id_rejected(self, user_id: str) -> None:
        with pytest.raises(ValidationError) as exc_info:
            parse_generation_request({"userId": user_id})
        assert str(exc_info.value) == INVALID_USER_ID_MESSAGE

    def test_user_id_longer_than_status_column_rejected(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            parse_generation_request({"userId": "u" * (MAX_USER_ID_LENGTH + 1)})
        assert str(exc_info.value) == USER_ID_TOO_LONG_MESSAGE

    def test_user_id_at_column_limit_accepted(self) -> None:
        user_id = "u" * MAX_USER_ID_LENGTH
        assert parse_generation_request({"userId": user_id}).user_id == user_id

    def test_user_id_is_stripped(self) -> None:
        assert parse_generation_request({"userId": "  u1 "}).user_id == "u1"

    def test_non_object_body_rejected(self) -> None:
        with pytest.raises(ValidationError):
            parse_generation_request(["userId", "u1"])

    def test_tempo_out_of_range_lists_field(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            parse_generation_request({"userId": "u1", "tempo": 0})
        assert "tempo" in str(exc_info.value)

    def test_requested_file_name_alias(self) -> None:
        req = parse_generation_request({"userId": "u1", "requestedFileName": "Take 2"})
        assert req.user_file_name == "Take 2"

    def test_blank_file_name_is_none(self) -> None:
        assert parse_generation_request({"userId": "u1", "userFileName": "  "}).user_file_name is None

    def test_single_octave_string_wrapped(self) -> None:
        assert parse_generation_request({"userId": "u1", "octaveRange": "C4"}).octave_range == ["C4"]

    def test_numeric_midi_length_stringified(self) -> None:
        req = parse_generation_request({"userId": "u1", "midiLength": 30})
        assert req.midi_length == "30"
        assert req.max_duration_seconds == 30

    def test_null_fields_fall_back_to_defaults(self) -> None:
        req = parse_generation_request({"userId": "u1", "key": None, "tempo": None})
        assert req.key == "C"
        assert req.tempo == 120

    def test_non_numeric_midi_length_has_no_duration(self) -> None:
        assert parse_generation_request({"userId": "u1"}).max_duration_seconds is None

    def test_unknown_fields_ignored(self) -> None:
        req = parse_generation_request({"userId": "u1", "somethingElse": True})
        assert req.user_id == "u1"

    def test_request_is_immutable(self) -> None:
        req = parse_generation_request({"userId": "u1"})
        with pytest.raises(Exception):
            req.key = "D"  # type: ignore[misc]

    def test_musical_parameters_exclude_identity(self) -> None:
        params = GenerationRequest(user_id="u1", user_file_name="x").musical_parameters()
        assert "userId" not in params
        assert "userFileName" not in params
        assert params["phraseType"] == "N/A"


# ---------------------------------------------------------------------------
# Status documents
# ---------------------------------------------------------------------------


NOW = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)


class TestStatusDocuments:

    def test_initial_status(self) -> None:
        doc = initial_status("run-1", NOW)
        assert doc == {
            "step": "init",
            "message": "request received",
            "ready": False,
            "started": NOW.isoformat(),
            "runId": "run-1",
        }

    def test_step_update_carries_message(self) -> None:
        assert step_update(PipelineStep.RENDERING_MP3) == {
            "step": "rendering_mp3",
            "message": "Rendering audio...",
        }

    def test_merge_none_deletes_key(self) -> None:
        merged = apply_merge({"a": 1, "b": 2}, {"b": None, "c": 3})
        assert merged == {"a": 1, "c": 3}

    def test_merge_does_not_mutate_current(self) -> None:
        current = {"a": 1}
        apply_merge(current, {"a": 2})
        assert current == {"a": 1}

    def test_error_update_clears_urls(self) -> None:
        done = apply_merge(
            initial_status("run-1", NOW),
            done_update(run_id="run-1", mp3_url="m", midi_url="d", finished=NOW),
        )
        failed = apply_merge(done, error_update(run_id="run-2", error="boom", finished=NOW))
        assert "mp3Url" not in failed
        assert "midiUrl" not in failed
        assert failed["ready"] is False
        assert failed["runId"] == "run-2"

    def test_done_update_clears_error(self) -> None:
        failed = apply_merge(None, error_update(run_id="run-1", error="boom", finished=NOW))
        done = apply_merge(failed, done_update(run_id="run-2", mp3_url="m", midi_url="d", finished=NOW))
        assert "error" not in done
        assert done["ready"] is True

    def test_typed_view_parses_document(self) -> None:
        doc = apply_merge(
            initial_status("run-1", NOW),
            done_update(run_id="run-1", mp3_url="m", midi_url="d", finished=NOW),
        )
        status = OrchestrationStatus.model_validate(doc)
        assert status.step == PipelineStep.DONE
        assert status.mp3_url == "m"
        assert status.run_id == "run-1"
