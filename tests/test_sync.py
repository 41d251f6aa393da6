import json

import pytest

from shinysync import sync
from shinysync.config import MergeConfig
from shinysync.shinyboard import FetchResult
from shinysync.store import StoreError, snapshot_digest
from shinysync.sync import (
    MODE_TEST,
    MODE_UPDATE,
    build_arg_parser,
    build_name_index,
    dry_run_subset,
    merge_store,
    resolve_lookup_name,
    run_merge,
)


def _store():
    return {
        "Hyper": {
            "shiny_count": 2,
            "shinies": {
                "1": {"Pokemon": "Zubat", "variant": "stale"},
                "2": {"Pokemon": "Abra", "Sold": "Yes"},
            },
        },
        "TTVxleJesse": {"shiny_count": 1, "shinies": {"1": {"Pokemon": "Eevee"}}},
        "Untouched": {"shiny_count": 1, "shinies": {"1": {"Pokemon": "Ditto", "variant": "keep"}}},
    }


def _results(**records_by_user):
    return {
        user: FetchResult(username=user, lookup_name=user, records=records, pages=1)
        for user, records in records_by_user.items()
    }


@pytest.fixture
def config(tmp_path):
    return MergeConfig(
        store_base_url="https://store.test/admin",
        output_path=str(tmp_path / "merged.json"),
        push_delay_seconds=0,
        username_mapping={"hyper": "HyperTheKing"},
    )


def test_resolve_lookup_name_uses_mapping_case_insensitively():
    mapping = {"matty": "Matt"}

    assert resolve_lookup_name("MATTY ", mapping) == "Matt"
    assert resolve_lookup_name(" Jay", mapping) == "Jay"


def test_build_name_index():
    assert build_name_index({"TTVxleJesse": {}, "Hyper": {}}) == {"ttvxlejesse": "TTVxleJesse", "hyper": "Hyper"}


def test_merge_store_resolves_names_and_skips_unknown(config):
    store = _store()
    results = _results(
        hyper=[{"pokemon_name": "zubat", "location": "Route 3"}],
        Nobody=[{"pokemon_name": "zubat", "location": "Nowhere"}],
    )

    outcome = merge_store(store, ["hyper", "Nobody"], results, config)

    assert outcome.processed == {"hyper": "Hyper"}
    assert outcome.skipped == ["Nobody"]
    assert outcome.database["Hyper"]["shinies"]["1"] == {"Pokemon": "Zubat", "location": "Route 3"}
    # other players are carried over untouched
    assert outcome.database["Untouched"] == store["Untouched"]
    # snapshot is not mutated
    assert store["Hyper"]["shinies"]["1"] == {"Pokemon": "Zubat", "variant": "stale"}


def test_merge_store_recount(config):
    outcome = merge_store(_store(), ["Hyper"], {}, config, recount=True)

    assert outcome.database["Hyper"]["shiny_count"] == 1


def test_merge_store_without_fetch_result_strips_only(config):
    outcome = merge_store(_store(), ["Hyper"], {}, config)

    assert outcome.database["Hyper"]["shinies"]["1"] == {"Pokemon": "Zubat"}
    assert outcome.database["Hyper"]["shiny_count"] == 2


def test_dry_run_subset_contains_only_processed(config):
    outcome = merge_store(_store(), ["Hyper", "ttvxlejesse"], {}, config)

    assert set(dry_run_subset(outcome)) == {"Hyper", "TTVxleJesse"}


@pytest.fixture
def fake_store(monkeypatch):
    state = {"db": _store(), "pushed": [], "reads": 0}

    def fake_fetch(url, **kwargs):
        state["reads"] += 1
        return json.loads(json.dumps(state["db"]))

    def fake_push(url, data, **kwargs):
        state["pushed"].append((url, data, kwargs))
        return {"success": True}

    monkeypatch.setattr(sync, "fetch_database", fake_fetch)
    monkeypatch.setattr(sync, "push_database", fake_push)
    return state


def _fetcher(results):
    seen = {}

    def fetch(users, config):
        seen["users"] = list(users)
        return {u: results.get(u, FetchResult(username=u, lookup_name=u)) for u in users}

    fetch.seen = seen
    return fetch


def test_run_merge_test_mode_writes_subset(config, fake_store):
    fetch = _fetcher(_results(Hyper=[{"pokemon_name": "zubat", "nature": "Jolly"}]))

    status = run_merge(config, ["Hyper", "Ghost"], mode=MODE_TEST, fetch_results=fetch)

    assert status == 0
    written = json.loads(open(config.output_path, encoding="utf-8").read())
    assert list(written) == ["Hyper"]
    assert written["Hyper"]["shinies"]["1"]["nature"] == "Jolly"
    assert fake_store["pushed"] == []


def test_run_merge_defaults_to_all_store_users(config, fake_store):
    fetch = _fetcher({})

    run_merge(config, None, mode=MODE_TEST, fetch_results=fetch)

    assert fetch.seen["users"] == ["Hyper", "TTVxleJesse", "Untouched"]


def test_run_merge_update_pushes_whole_store(config, fake_store):
    fetch = _fetcher(_results(Hyper=[{"pokemon_name": "zubat", "location": "Route 3"}]))
    sleeps = []

    status = run_merge(
        config,
        ["Hyper"],
        mode=MODE_UPDATE,
        credentials=("admin", "pw"),
        fetch_results=fetch,
        sleep=sleeps.append,
    )

    assert status == 0
    assert sleeps == [0.0]
    assert len(fake_store["pushed"]) == 1
    url, data, kwargs = fake_store["pushed"][0]
    assert url == "https://store.test/admin/update-database"
    assert set(data) == {"Hyper", "TTVxleJesse", "Untouched"}
    assert data["Hyper"]["shinies"]["1"]["location"] == "Route 3"
    assert kwargs["username"] == "admin"
    assert kwargs["password"] == "pw"
    assert fake_store["reads"] == 2


def test_run_merge_refuses_push_when_store_changed(config, fake_store):
    def fetch(users, cfg):
        fake_store["db"]["Hyper"]["shiny_count"] = 999
        return {}

    status = run_merge(config, ["Hyper"], credentials=("a", "b"), fetch_results=fetch, sleep=lambda s: None)

    assert status == 1
    assert fake_store["pushed"] == []


def test_run_merge_skip_conflict_check(config, fake_store):
    def fetch(users, cfg):
        fake_store["db"]["Hyper"]["shiny_count"] = 999
        return {}

    status = run_merge(
        config,
        ["Hyper"],
        credentials=("a", "b"),
        check_conflicts=False,
        fetch_results=fetch,
        sleep=lambda s: None,
    )

    assert status == 0
    assert len(fake_store["pushed"]) == 1


def test_run_merge_push_failure_keeps_recovery_file(config, fake_store, monkeypatch, tmp_path):
    def failing_push(url, data, **kwargs):
        raise StoreError("Failed to update database: 401", 401)

    monkeypatch.setattr(sync, "push_database", failing_push)

    status = run_merge(config, ["Hyper"], credentials=("a", "b"), fetch_results=_fetcher({}), sleep=lambda s: None)

    assert status == 1
    recovery = tmp_path / "merged.unpushed.json"
    assert set(json.loads(recovery.read_text(encoding="utf-8"))) == {"Hyper", "TTVxleJesse", "Untouched"}


def test_run_merge_cancelled_during_grace_period(config, fake_store):
    def interrupt(_seconds):
        raise KeyboardInterrupt

    status = run_merge(config, ["Hyper"], credentials=("a", "b"), fetch_results=_fetcher({}), sleep=interrupt)

    assert status == 130
    assert fake_store["pushed"] == []


def test_run_merge_store_read_failure_is_fatal(config, monkeypatch):
    def broken(url, **kwargs):
        raise StoreError("down")

    monkeypatch.setattr(sync, "fetch_database", broken)

    def fetch(users, cfg):
        raise AssertionError("should not fetch when the store is unreadable")

    assert run_merge(config, ["Hyper"], mode=MODE_TEST, fetch_results=fetch) == 1


def test_prompt_credentials_prefers_environment(monkeypatch):
    monkeypatch.setenv(sync.USERNAME_ENV, "envuser")
    monkeypatch.setenv(sync.PASSWORD_ENV, "envpass")

    assert sync.prompt_credentials(lambda p: "x", lambda p: "y") == ("envuser", "envpass")

    monkeypatch.delenv(sync.USERNAME_ENV)
    monkeypatch.delenv(sync.PASSWORD_ENV)
    assert sync.prompt_credentials(lambda p: " typed ", lambda p: "secret") == ("typed", "secret")


def test_arg_parser_modes_and_lists():
    parser = build_arg_parser()

    args = parser.parse_args(["--test", "--users", "Hyper,Jesse", "--fields", "ivs"])
    assert args.mode == MODE_TEST
    assert args.users == "Hyper,Jesse"
    assert args.fields == "ivs"

    assert parser.parse_args([]).mode == MODE_UPDATE
    with pytest.raises(SystemExit):
        parser.parse_args(["--test", "--update"])


def test_main_uses_config_file_and_overrides(tmp_path, monkeypatch):
    cfg_path = tmp_path / "config.json"
    cfg_path.write_text(json.dumps({"push_delay_seconds": 5}), encoding="utf-8")
    captured = {}

    def fake_run(config, users, **kwargs):
        captured.update(config=config, users=users, **kwargs)
        return 0

    monkeypatch.setattr(sync, "run_merge", fake_run)

    status = sync.main(
        ["--config", str(cfg_path), "--test", "--users", "Hyper", "--fields", "ivs,nature", "--delay", "1"]
    )

    assert status == 0
    assert captured["users"] == ["Hyper"]
    assert captured["mode"] == MODE_TEST
    assert captured["config"].fields_to_merge == ("ivs", "nature")
    assert captured["config"].push_delay_seconds == 1.0


def test_main_missing_config_fails(tmp_path):
    assert sync.main(["--config", str(tmp_path / "missing.json")]) == 1


def test_snapshot_digest_matches_unchanged_round_trip():
    store = _store()
    assert snapshot_digest(json.loads(json.dumps(store))) == snapshot_digest(store)


def test_merge_store_bad_player_does_not_stop_others(config):
    store = {"Bad": ["x"], "Good": {"shinies": {"1": {"Pokemon": "Zubat"}}}}
    results = _results(Good=[{"pokemon_name": "zubat", "location": "Route 3"}])

    outcome = merge_store(store, ["Bad", "Good"], results, config, recount=True)

    assert outcome.database["Bad"] == ["x"]
    assert outcome.database["Good"]["shinies"]["1"]["location"] == "Route 3"
    assert outcome.processed == {"Bad": "Bad", "Good": "Good"}


def test_run_merge_dry_run_write_failure_exits_1(config, fake_store, monkeypatch):
    def unwritable(path, obj):
        raise PermissionError(13, "Permission denied", path)

    monkeypatch.setattr(sync, "atomic_write_json", unwritable)

    assert run_merge(config, ["Hyper"], mode=MODE_TEST, fetch_results=_fetcher({})) == 1


def test_run_merge_recovery_write_failure_still_exits_1(config, fake_store, monkeypatch):
    def failing_push(url, data, **kwargs):
        raise StoreError("Failed to update database: 500", 500)

    def unwritable(path, obj):
        raise OSError("disk full")

    monkeypatch.setattr(sync, "push_database", failing_push)
    monkeypatch.setattr(sync, "atomic_write_json", unwritable)

    status = run_merge(config, ["Hyper"], credentials=("a", "b"), fetch_results=_fetcher({}), sleep=lambda s: None)

    assert status == 1
