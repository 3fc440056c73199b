from local_llm_chat.config import DEFAULT_SETTINGS, load_settings, normalize_profile, parse_bool


def test_load_settings_merges_nested_sections_onto_defaults(tmp_path):
    settings_file = tmp_path / "settings.yaml"
    settings_file.write_text(
        "default_model_id: qwen\n"
        "generation:\n"
        "  profile: fast\n"
        "llama:\n"
        "  n_threads: 4\n",
        encoding="utf-8",
    )

    config = load_settings(str(settings_file))

    assert config["default_model_id"] == "qwen"
    assert config["generation"]["profile"] == "fast"
    assert config["generation"]["max_tokens"] == DEFAULT_SETTINGS["generation"]["max_tokens"]
    assert config["llama"]["n_threads"] == 4
    assert config["llama"]["seed"] == DEFAULT_SETTINGS["llama"]["seed"]
    assert config["database"] == DEFAULT_SETTINGS["database"]


def test_load_settings_missing_or_empty_file_returns_defaults(tmp_path):
    assert load_settings(str(tmp_path / "absent.yaml")) == DEFAULT_SETTINGS

    empty = tmp_path / "empty.yaml"
    empty.write_text("", encoding="utf-8")
    config = load_settings(str(empty))
    assert config == DEFAULT_SETTINGS

    config["generation"]["max_tokens"] = 1
    assert DEFAULT_SETTINGS["generation"]["max_tokens"] != 1


def test_normalize_profile_and_parse_bool():
    assert normalize_profile(" Quality ") == "quality"
    assert normalize_profile("turbo") is None
    assert parse_bool("yes") is True
    assert parse_bool("off") is False
