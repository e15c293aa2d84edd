"""Tests for the delegation observation wire format."""

from __future__ import annotations

from octoloop.ai.orchestration.task_observations import (
    TaskObservation,
    build_observation_output,
    build_parallel_observation_output,
    parse_task_observation,
    parse_task_observations,
)


def _observation(task_id: str = "task_call_1_0", trace: str = "[user]\nhi", result: str = "done") -> TaskObservation:
    return TaskObservation(
        task_id=task_id,
        subagent_name="explore",
        description="scan the repo",
        trace=trace,
        result=result,
    )


def test_single_output_round_trips() -> None:
    observation = _observation()
    assert parse_task_observation(build_observation_output(observation)) == observation


def test_single_output_round_trips_with_empty_trace_and_result() -> None:
    observation = _observation(trace="", result="")
    assert parse_task_observation(build_observation_output(observation)) == observation


def test_batch_output_round_trips_in_order() -> None:
    observations = [_observation("a"), _observation("b", trace="", result=""), _observation("c", result="x\ny")]

    text = build_parallel_observation_output(observations)

    assert text.startswith("task_parallel_count: 3\n\n<task_observation>")
    assert parse_task_observations(text) == observations


def test_single_output_layout() -> None:
    text = build_observation_output(_observation())

    assert text.split("\n") == [
        "task_id: task_call_1_0",
        "task_subagent: explore",
        "task_description: scan the repo",
        "",
        "<task_trace>",
        "[user]",
        "hi",
        "</task_trace>",
        "",
        "<task_result>",
        "done",
        "</task_result>",
    ]


def test_fields_are_truncated_independently() -> None:
    single = parse_task_observation(build_observation_output(_observation(trace="t" * 5_000, result="r" * 2_500)))
    assert single.trace == "t" * 4_000 + "\n... (truncated)"
    assert single.result == "r" * 2_000 + "\n... (truncated)"

    batch = parse_task_observations(
        build_parallel_observation_output([_observation(trace="t" * 5_000, result="r" * 2_500)])
    )
    assert batch[0].trace == "t" * 3_000 + "\n... (truncated)"
    assert batch[0].result == "r" * 1_500 + "\n... (truncated)"


def test_missing_trace_and_result_tags_parse_to_empty_strings() -> None:
    parsed = parse_task_observation("task_id: t1\ntask_subagent: general\ntask_description: fix it\n")

    assert parsed == TaskObservation(task_id="t1", subagent_name="general", description="fix it")


def test_missing_required_header_is_unparseable() -> None:
    for missing in ("task_id", "task_subagent", "task_description"):
        lines = [
            "task_id: t1",
            "task_subagent: general",
            "task_description: fix it",
            "<task_result>",
            "ok",
            "</task_result>",
        ]
        text = "\n".join(line for line in lines if not line.startswith(missing))
        assert parse_task_observation(text) is None
        assert parse_task_observations(text) == []


def test_empty_header_value_does_not_borrow_next_line() -> None:
    text = "task_id:\ntask_subagent: general\ntask_description: fix it"
    assert parse_task_observation(text) is None


def test_unparsable_batch_blocks_are_skipped() -> None:
    good = _observation("good")
    text = "\n".join(
        [
            "task_parallel_count: 2",
            "",
            "<task_observation>\ntask_id: broken\n</task_observation>",
            build_parallel_observation_output([good]).split("\n", 2)[2],
        ]
    )

    assert parse_task_observations(text) == [good]


def test_plain_text_yields_nothing() -> None:
    assert parse_task_observations("just some tool output") == []
