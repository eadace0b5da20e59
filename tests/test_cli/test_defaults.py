from __future__ import annotations

from hubrunner.cli._config_loader import apply_defaults, resolved_tasks
from hubrunner.cli._schemas import BatchConfigSchema, DefaultsSchema, InferenceTaskSchema


def _defaults(**overrides: object) -> DefaultsSchema:
    base = dict(
        model="org/model",
        hf_filename="model.Q4_K_M.gguf",
        cache_dir="/tmp/hubrunner-cache",
        max_tokens=256,
        temperature=0.5,
        top_k=30,
        top_p=0.9,
        ctx_size=1024,
        threads=4,
    )
    base.update(overrides)
    return DefaultsSchema(**base)


def test_apply_defaults_fills_every_unset_field() -> None:
    task = InferenceTaskSchema(name="a", prompt="hi")

    merged = apply_defaults(task, _defaults())

    assert merged.model == "org/model"
    assert merged.hf_filename == "model.Q4_K_M.gguf"
    assert merged.cache_dir == "/tmp/hubrunner-cache"
    assert (merged.max_tokens, merged.temperature, merged.top_k, merged.top_p) == (256, 0.5, 30, 0.9)
    assert (merged.ctx_size, merged.threads) == (1024, 4)


def test_apply_defaults_keeps_task_values() -> None:
    task = InferenceTaskSchema(name="a", prompt="hi", model="/models/local.gguf", temperature=0.0, top_k=0)

    merged = apply_defaults(task, _defaults())

    assert merged.model == "/models/local.gguf"
    assert merged.temperature == 0.0
    assert merged.top_k == 0
    assert merged.max_tokens == 256


def test_apply_defaults_is_idempotent_and_non_destructive() -> None:
    task = InferenceTaskSchema(name="a", prompt="hi", max_tokens=10)
    defaults = _defaults()

    once = apply_defaults(task, defaults)
    twice = apply_defaults(once, defaults)

    assert once == twice
    assert task.model is None
    assert task.max_tokens == 10


def test_blank_strings_count_as_unset() -> None:
    task = InferenceTaskSchema(name="a", prompt="hi", model="  ")
    assert apply_defaults(task, _defaults()).model == "org/model"


def test_flags_are_ored() -> None:
    on = _defaults(verbose=True, stats=True, no_color=False)

    merged = apply_defaults(InferenceTaskSchema(name="a", prompt="hi", no_color=True), on)
    assert (merged.verbose, merged.stats, merged.no_color) == (True, True, True)

    off = _defaults(verbose=False, stats=None)
    kept = apply_defaults(InferenceTaskSchema(name="b", prompt="hi", verbose=True), off)
    assert kept.verbose is True
    assert kept.stats is False


def test_missing_defaults_return_task_unchanged() -> None:
    task = InferenceTaskSchema(name="a", prompt="hi")
    assert apply_defaults(task, None) is task


def test_resolved_tasks_merge_in_declaration_order() -> None:
    config = BatchConfigSchema(
        version="1",
        defaults=_defaults(),
        tasks=[InferenceTaskSchema(name="first", prompt="p"), InferenceTaskSchema(name="second", prompt="p")],
    )

    merged = resolved_tasks(config)

    assert [task.name for task in merged] == ["first", "second"]
    assert all(task.model == "org/model" for task in merged)


def test_task_model_source_comes_from_task_fields() -> None:
    local = apply_defaults(InferenceTaskSchema(name="a", prompt="hi", model="./local.gguf"), _defaults())
    assert local.model_source == "local"
    assert local.hf_filename == "model.Q4_K_M.gguf"

    hub = apply_defaults(
        InferenceTaskSchema(name="b", prompt="hi", model="org/other", hf_filename="o.gguf"), _defaults()
    )
    assert hub.model_source == "hub"

    explicit = apply_defaults(
        InferenceTaskSchema(name="c", prompt="hi", model="org/other", model_source="hub"), _defaults()
    )
    assert explicit.model_source == "hub"

    inherited = apply_defaults(InferenceTaskSchema(name="d", prompt="hi"), _defaults())
    assert inherited.model_source is None
