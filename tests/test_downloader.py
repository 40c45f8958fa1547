from __future__ import annotations

from dataclasses import replace
from pathlib import Path

import pytest
import requests
import requests_mock

from podboot import downloader
from podboot.downloader import (
    PRESENCE_THRESHOLD,
    download_asset,
    is_present,
    provision_models,
    resolve_destination,
    sync_assets,
    wants_token,
)
from podboot.manifest import ManifestEntry

MANIFEST_URL = "https://lists.example.com/models.txt"


@pytest.fixture
def app_ctx(ctx):
    Path(ctx.app_dir).mkdir(parents=True)
    return ctx


def root(ctx) -> Path:
    return Path(ctx.app_dir).resolve()


@pytest.mark.parametrize(
    "rel",
    ["../../etc/passwd", "/etc/shadow", "a/../../../b", "..\\..\\win.ini", "//x//..//..//y", "models/../.."],
)
def test_destination_never_escapes_root(tmp_path, rel) -> None:
    base = tmp_path / "root"
    base.mkdir()
    dest = resolve_destination(base, rel)
    assert base.resolve() in dest.parents or dest == base.resolve()


def test_traversal_is_neutralized(tmp_path) -> None:
    assert resolve_destination(tmp_path, "../../etc/passwd") == tmp_path.resolve() / "etc" / "passwd"


def test_symlink_escape_is_rejected(tmp_path) -> None:
    base = tmp_path / "root"
    base.mkdir()
    outside = tmp_path / "outside"
    outside.mkdir()
    (base / "link").symlink_to(outside, target_is_directory=True)
    with pytest.raises(RuntimeError, match="escapes"):
        resolve_destination(base, "link/file.bin")


def test_presence_threshold(tmp_path) -> None:
    small = tmp_path / "small.bin"
    small.write_bytes(b"\0" * PRESENCE_THRESHOLD)
    big = tmp_path / "big.bin"
    big.write_bytes(b"\0" * (PRESENCE_THRESHOLD + 1))
    assert not is_present(small)
    assert is_present(big)
    assert not is_present(tmp_path / "missing.bin")
    assert not is_present(tmp_path)


@pytest.mark.parametrize(
    "url,expected",
    [
        ("https://huggingface.co/org/repo/resolve/main/a.safetensors", True),
        ("https://cdn-lfs.huggingface.co/x", True),
        ("https://hf.co/org/repo/resolve/main/a.bin", True),
        ("https://civitai.com/api/download/models/1", False),
        ("https://nothuggingface.co/x", False),
        ("https://example.com/huggingface.co/x", False),
    ],
)
def test_wants_token(url, expected) -> None:
    assert wants_token(url) is expected


def test_fetches_into_destination(app_ctx) -> None:
    entry = ManifestEntry("https://host.example/a.bin", "models/a.bin")
    with requests_mock.Mocker() as m:
        m.get("https://host.example/a.bin", content=b"payload")
        outcome = download_asset(app_ctx, entry, requests.Session())
    assert outcome == downloader.DOWNLOADED
    target = root(app_ctx) / "models" / "a.bin"
    assert target.read_bytes() == b"payload"
    assert not target.with_name("a.bin.part").exists()


def test_small_existing_file_is_redownloaded(app_ctx) -> None:
    target = root(app_ctx) / "models" / "a.bin"
    target.parent.mkdir(parents=True)
    target.write_bytes(b"x" * PRESENCE_THRESHOLD)
    with requests_mock.Mocker() as m:
        m.get("https://host.example/a.bin", content=b"fresh")
        outcome = download_asset(app_ctx, ManifestEntry("https://host.example/a.bin", "models/a.bin"), requests.Session())
        assert m.call_count == 1
    assert outcome == downloader.DOWNLOADED
    assert target.read_bytes() == b"fresh"


def test_large_existing_file_is_skipped(app_ctx) -> None:
    target = root(app_ctx) / "models" / "a.bin"
    target.parent.mkdir(parents=True)
    target.write_bytes(b"x" * (PRESENCE_THRESHOLD + 1))
    with requests_mock.Mocker() as m:
        outcome = download_asset(app_ctx, ManifestEntry("https://host.example/a.bin", "models/a.bin"), requests.Session())
        assert m.call_count == 0
    assert outcome == downloader.SKIPPED


def test_bearer_token_only_for_token_hosts(app_ctx) -> None:
    ctx = replace(app_ctx, hf_token="hf_secret")
    entries = [
        ManifestEntry("https://huggingface.co/o/r/resolve/main/a.bin", "models/a.bin"),
        ManifestEntry("https://civitai.com/api/download/models/7", "models/b.bin"),
    ]
    with requests_mock.Mocker() as m:
        m.get("https://huggingface.co/o/r/resolve/main/a.bin", content=b"a")
        m.get("https://civitai.com/api/download/models/7", content=b"b")
        sync_assets(ctx, entries, requests.Session())
        hf_req, other_req = m.request_history
    assert hf_req.headers["Authorization"] == "Bearer hf_secret"
    assert "Authorization" not in other_req.headers


def test_no_token_configured_sends_no_header(app_ctx) -> None:
    with requests_mock.Mocker() as m:
        m.get("https://huggingface.co/o/r/resolve/main/a.bin", content=b"a")
        download_asset(app_ctx, ManifestEntry("https://huggingface.co/o/r/resolve/main/a.bin", "a.bin"), requests.Session())
        assert "Authorization" not in m.request_history[0].headers


class _BrokenResponse:
    def __init__(self) -> None:
        self.status_code = 200

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def raise_for_status(self) -> None:
        pass

    def iter_content(self, chunk_size=1):
        yield b"partial"
        raise requests.ConnectionError("connection reset")


class _BrokenSession:
    def get(self, url, **kwargs):
        return _BrokenResponse()


def test_interrupted_download_leaves_only_temp_file(app_ctx) -> None:
    entry = ManifestEntry("https://host.example/a.bin", "models/a.bin")
    with pytest.raises(requests.ConnectionError):
        download_asset(app_ctx, entry, _BrokenSession())
    target = root(app_ctx) / "models" / "a.bin"
    assert not target.exists()
    assert target.with_name("a.bin.part").read_bytes() == b"partial"

    # the next boot retries and publishes over the stale temp file
    with requests_mock.Mocker() as m:
        m.get("https://host.example/a.bin", content=b"complete")
        assert download_asset(app_ctx, entry, requests.Session()) == downloader.DOWNLOADED
    assert target.read_bytes() == b"complete"


def test_failures_are_isolated(app_ctx, log_text) -> None:
    entries = [
        ManifestEntry("https://host.example/a.bin", "models/a.bin"),
        ManifestEntry("https://host.example/b.bin", "models/b.bin"),
        ManifestEntry("https://host.example/c.bin", "models/c.bin"),
    ]
    with requests_mock.Mocker() as m:
        m.get("https://host.example/a.bin", content=b"a")
        m.get("https://host.example/b.bin", status_code=404)
        m.get("https://host.example/c.bin", content=b"c")
        summary = sync_assets(app_ctx, entries, requests.Session())
    assert summary.downloaded == ["models/a.bin", "models/c.bin"]
    assert summary.failed == ["models/b.bin"]
    assert summary.attempted == 3
    assert not (root(app_ctx) / "models" / "b.bin").exists()
    assert "models: failed https://host.example/b.bin" in log_text()


def test_duplicate_destinations_download_once(app_ctx) -> None:
    entries = [
        ManifestEntry("https://host.example/a.bin", "models/a.bin"),
        ManifestEntry("https://host.example/other.bin", "models/a.bin"),
    ]
    with requests_mock.Mocker() as m:
        m.get("https://host.example/a.bin", content=b"first")
        summary = sync_assets(app_ctx, entries, requests.Session())
        assert m.call_count == 1
    assert summary.downloaded == ["models/a.bin"]


def test_parallel_downloads(app_ctx) -> None:
    ctx = replace(app_ctx, download_jobs=3)
    entries = [ManifestEntry(f"https://host.example/{i}.bin", f"models/{i}.bin") for i in range(6)]
    with requests_mock.Mocker() as m:
        for i in range(6):
            m.get(f"https://host.example/{i}.bin", content=str(i).encode())
        summary = sync_assets(ctx, entries)
    assert sorted(summary.downloaded) == sorted(e.dest for e in entries)
    for i in range(6):
        assert (root(ctx) / "models" / f"{i}.bin").read_bytes() == str(i).encode()


def test_no_manifest_url_is_a_noop(app_ctx, log_text) -> None:
    with requests_mock.Mocker() as m:
        assert provision_models(app_ctx) is None
        assert m.call_count == 0
    skipped = [line for line in log_text().splitlines() if "Skipping" in line]
    assert len(skipped) == 1


def test_missing_app_dir_is_a_noop(ctx) -> None:
    ctx = replace(ctx, model_list_url=MANIFEST_URL)
    with requests_mock.Mocker() as m:
        assert provision_models(ctx) is None
        assert m.call_count == 0


def test_one_malformed_line_and_n_good_lines(app_ctx, log_text) -> None:
    ctx = replace(app_ctx, model_list_url=MANIFEST_URL)
    manifest = "\n".join(
        [
            "https://host.example/a.bin models/a.bin",
            "this line is malformed",
            "https://host.example/b.bin models/b.bin",
            "https://host.example/c.bin ../../etc/c.bin",
        ]
    )
    with requests_mock.Mocker() as m:
        m.get(MANIFEST_URL, text=manifest)
        for name in ("a", "b", "c"):
            m.get(f"https://host.example/{name}.bin", content=name.encode())
        summary = provision_models(ctx, requests.Session())
        asset_calls = [r for r in m.request_history if r.url != MANIFEST_URL]
    assert len(asset_calls) == 3
    assert summary.attempted == 3
    assert (root(ctx) / "etc" / "c.bin").read_bytes() == b"c"
    assert log_text().count("models: skipping line") == 1


def test_second_run_downloads_nothing(app_ctx) -> None:
    ctx = replace(app_ctx, model_list_url=MANIFEST_URL)
    big = b"z" * (PRESENCE_THRESHOLD + 10)
    with requests_mock.Mocker() as m:
        m.get(MANIFEST_URL, text="https://host.example/a.bin models/a.bin\n")
        m.get("https://host.example/a.bin", content=big)
        first = provision_models(ctx, requests.Session())
        second = provision_models(ctx, requests.Session())
        asset_calls = [r for r in m.request_history if r.url != MANIFEST_URL]
    assert first.downloaded == ["models/a.bin"]
    assert second.downloaded == []
    assert second.skipped == ["models/a.bin"]
    assert len(asset_calls) == 1


def test_undecodable_manifest_line_does_not_abort_batch(app_ctx) -> None:
    ctx = replace(app_ctx, model_list_url=MANIFEST_URL)
    body = b"https://host.example/a.bin models/a.bin\nhttps://host.example/\xff models/x.bin\n"
    with requests_mock.Mocker() as m:
        m.get(MANIFEST_URL, content=body)
        m.get("https://host.example/a.bin", content=b"a")
        summary = provision_models(ctx, requests.Session())
    assert summary.downloaded == ["models/a.bin"]
    assert (root(ctx) / "models" / "a.bin").read_bytes() == b"a"
