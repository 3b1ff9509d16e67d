from __future__ import annotations

import json
from dataclasses import replace

import pytest

from alert_relay.config import (
    JsonFileConfigSource,
    MemoryConfigSource,
    RelayConfig,
    RelaySettings,
    diff_feed_configs,
    validate_config,
)
from alert_relay.errors import ConfigurationInvalid, FeedNotFound
from alert_relay.models import FeedConfig

ID_1 = "6f1c2a4e-8b3d-4f5a-9c7e-1d2b3a4c5e6f"
ID_2 = "0b7e9d1c-3a5f-4e2b-8d6c-7f9a1b2c3d4e"
ID_3 = "a3d5f7b9-1c2e-4a6b-b8d0-e2f4a6c8e0b1"


def _feed(feed_id=ID_1, name="Alpha", **overrides) -> FeedConfig:
    values = dict(
        id=feed_id,
        name=name,
        type="dataminr",
        enabled=True,
        url="https://api.example.com",
        api_id="user",
        api_key="secret",
        channel_id="ops",
        poll_interval_seconds=30,
    )
    values.update(overrides)
    return FeedConfig(**values)


# -- diff_feed_configs --


def test_diff_classifies_add_update_remove():
    old = [_feed(ID_1, "A"), _feed(ID_2, "B")]
    new = [_feed(ID_1, "A2"), _feed(ID_3, "C")]
    diff = diff_feed_configs(old, new)
    assert diff.to_update == [ID_1]
    assert diff.to_remove == [ID_2]
    assert diff.to_add == [ID_3]


def test_diff_identical_configs_is_empty():
    feeds = [_feed(ID_1), _feed(ID_2, "B")]
    assert diff_feed_configs(feeds, list(feeds)).is_empty()


def test_diff_any_field_change_is_an_update():
    diff = diff_feed_configs([_feed()], [_feed(enabled=False)])
    assert diff.to_update == [ID_1]
    assert diff.to_add == []
    assert diff.to_remove == []


# -- validate_config --


def test_validate_accepts_good_config():
    validate_config(RelayConfig(feeds=(_feed(), _feed(ID_2, "Beta"))), ["dataminr"])


def test_validate_empty_config_is_valid():
    validate_config(RelayConfig(), ["dataminr"])


@pytest.mark.parametrize(
    ("feed", "message"),
    [
        (_feed(api_key=""), "missing required field 'apiKey'"),
        (_feed(feed_id="not-a-uuid"), "invalid UUID format"),
        (_feed(feed_id="6f1c2a4e-8b3d-1f5a-9c7e-1d2b3a4c5e6f"), "UUID v4"),
        (_feed(type="rss"), "unsupported type 'rss'"),
        (_feed(url="http://api.example.com"), "HTTPS"),
        (_feed(url="https://"), "hostname"),
        (_feed(poll_interval_seconds=5), "at least 10 seconds"),
    ],
)
def test_validate_rejects_bad_feed(feed, message):
    with pytest.raises(ConfigurationInvalid, match=message):
        validate_config(RelayConfig(feeds=(feed,)), ["dataminr"])


def test_validate_rejects_duplicate_id_and_name():
    with pytest.raises(ConfigurationInvalid, match="duplicate feed id"):
        validate_config(RelayConfig(feeds=(_feed(), _feed(name="Other"))), ["dataminr"])
    with pytest.raises(ConfigurationInvalid, match="duplicate feed name"):
        validate_config(RelayConfig(feeds=(_feed(), _feed(ID_2))), ["dataminr"])


def test_validate_honours_min_interval_setting():
    config = RelayConfig(feeds=(_feed(poll_interval_seconds=20),))
    with pytest.raises(ConfigurationInvalid):
        validate_config(config, ["dataminr"], RelaySettings(min_poll_interval_seconds=60))


# -- RelayConfig --


def test_with_feed_enabled_returns_new_config():
    config = RelayConfig(feeds=(_feed(), _feed(ID_2, "Beta")), admins=("root",))
    updated = config.with_feed_enabled(ID_2, False)
    assert config.find_feed(ID_2).enabled is True
    assert updated.find_feed(ID_2).enabled is False
    assert updated.find_feed(ID_1) == config.find_feed(ID_1)
    assert updated.admins == ("root",)


def test_with_feed_enabled_unknown_feed():
    with pytest.raises(FeedNotFound):
        RelayConfig().with_feed_enabled(ID_1, False)


def test_round_trip_uses_camel_case_keys():
    config = RelayConfig(feeds=(_feed(),), admins=("alice",))
    data = config.to_dict()
    assert data["feeds"][0]["pollIntervalSeconds"] == 30
    assert data["feeds"][0]["apiId"] == "user"
    assert RelayConfig.from_dict(data) == config


def test_settings_from_dict_ignores_unknown_keys():
    settings = RelaySettings.from_dict({"max_consecutive_failures": 3, "colour": "blue"})
    assert settings.max_consecutive_failures == 3
    assert settings.catch_up_interval_seconds == 5.0


@pytest.mark.parametrize(
    ("overrides", "message"),
    [
        ({"pollIntervalSeconds": "thirty"}, "'pollIntervalSeconds' must be a whole number"),
        ({"pollIntervalSeconds": 12.5}, "'pollIntervalSeconds' must be a whole number"),
        ({"enabled": "false"}, "'enabled' must be true or false"),
        ({"name": ["Alpha"]}, "'name' must be a string"),
    ],
)
def test_wrongly_typed_feed_fields_are_invalid(overrides, message):
    feed = {**_feed().to_dict(), **overrides}
    with pytest.raises(ConfigurationInvalid, match=message):
        RelayConfig.from_dict({"feeds": [feed]})


@pytest.mark.parametrize(
    ("document", "message"),
    [
        ([], "must be a JSON object"),
        ({"feeds": {"id": ID_1}}, "'feeds' must be a list"),
        ({"feeds": ["alpha"]}, "position 1: expected an object"),
        ({"admins": "root"}, "'admins' must be a list"),
    ],
)
def test_malformed_document_shape_is_invalid(document, message):
    with pytest.raises(ConfigurationInvalid, match=message):
        RelayConfig.from_dict(document)


def test_missing_enabled_defaults_to_disabled():
    feed = _feed().to_dict()
    del feed["enabled"]
    assert RelayConfig.from_dict({"feeds": [feed]}).feeds[0].enabled is False


def test_missing_poll_interval_is_rejected_not_defaulted():
    feed = _feed().to_dict()
    del feed["pollIntervalSeconds"]
    config = RelayConfig.from_dict({"feeds": [feed]})
    assert config.feeds[0].poll_interval_seconds == 0
    with pytest.raises(ConfigurationInvalid, match="missing required field 'pollIntervalSeconds'"):
        validate_config(config, ["dataminr"])
    assert not hasattr(RelaySettings(), "default_poll_interval_seconds")


def test_settings_with_wrong_types_are_invalid():
    with pytest.raises(ConfigurationInvalid, match="max_consecutive_failures"):
        RelaySettings.from_dict({"max_consecutive_failures": "5"})
    with pytest.raises(ConfigurationInvalid, match="settings must be an object"):
        RelaySettings.from_dict([1])


def test_file_source_rejects_non_object_document(tmp_path):
    path = tmp_path / "relay.json"
    path.write_text("[]", encoding="utf-8")
    source = JsonFileConfigSource(path)
    with pytest.raises(ConfigurationInvalid, match="must be a JSON object"):
        source.load()
    with pytest.raises(ConfigurationInvalid, match="must be a JSON object"):
        source.load_settings()


# -- sources --


def test_memory_source_notifies_after_save():
    source = MemoryConfigSource()
    seen: list[RelayConfig] = []
    source.subscribe(lambda: seen.append(source.load()))
    config = RelayConfig(feeds=(_feed(),))
    source.save(config)
    assert seen == [config]


def test_unsubscribed_listener_is_not_called():
    source = MemoryConfigSource()
    calls: list[int] = []

    def _listener():
        calls.append(1)

    source.subscribe(_listener)
    source.unsubscribe(_listener)
    source.save(RelayConfig())
    assert calls == []


def test_json_source_preserves_settings_block(tmp_path):
    path = tmp_path / "relay.json"
    path.write_text(
        json.dumps({"settings": {"max_consecutive_failures": 2}, "admins": [], "feeds": []}),
        encoding="utf-8",
    )
    source = JsonFileConfigSource(path)
    config = RelayConfig(feeds=(_feed(),), admins=("alice",))
    source.save(replace(config))

    document = json.loads(path.read_text(encoding="utf-8"))
    assert document["settings"] == {"max_consecutive_failures": 2}
    assert document["feeds"][0]["id"] == ID_1
    assert source.load() == config
    assert source.load_settings().max_consecutive_failures == 2


def test_json_source_missing_file_is_empty(tmp_path):
    source = JsonFileConfigSource(tmp_path / "absent.json")
    assert source.load() == RelayConfig()
    assert source.load_settings() == RelaySettings()


def test_json_source_rejects_unreadable_document(tmp_path):
    path = tmp_path / "relay.json"
    path.write_text("{not json", encoding="utf-8")
    with pytest.raises(ConfigurationInvalid, match="cannot read configuration"):
        JsonFileConfigSource(path).load()
