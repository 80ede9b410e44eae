from __future__ import annotations

import asyncio

import pytest

from avatar_ingest.cli import main
from avatar_ingest.db.models import ImageKind
from avatar_ingest.domain import compute_fingerprint


def test_fingerprint_command(tmp_path, capsys):
    target = tmp_path / "blob.bin"
    target.write_bytes(b"abc")
    main(["fingerprint", "--file", str(target)])
    assert compute_fingerprint(b"abc") in capsys.readouterr().out


def test_inspect_reports_policy_decision(tmp_path, capsys, make_image):
    target = tmp_path / "wide.png"
    target.write_bytes(make_image((2000, 1000), "PNG"))
    main(["inspect", "--file", str(target), "--kind", "banner"])
    out = capsys.readouterr().out
    assert '"action": "transcode"' in out
    assert '"format": "PNG"' in out
    assert "1024" in out


def test_missing_file_exits_with_usage_error(tmp_path):
    with pytest.raises(SystemExit) as excinfo:
        main(["inspect", "--file", str(tmp_path / "missing.png")])
    assert excinfo.value.code == 2


def test_ingest_command_commits(tmp_path, capsys, make_image):
    target = tmp_path / "avatar.png"
    target.write_bytes(make_image((64, 64), "PNG"))
    main(["ingest", "--file", str(target), "--kind", "avatar", "--uploaded-by", "5", "--create-schema"])
    out = capsys.readouterr().out
    assert '"new": true' in out
    assert '"content_type": "image/webp"' in out


def test_ingest_command_reports_rejections(tmp_path, capsys):
    target = tmp_path / "broken.png"
    target.write_bytes(b"not an image")
    with pytest.raises(SystemExit) as excinfo:
        main(["ingest", "--file", str(target)])
    assert excinfo.value.code == 4
    assert '"stage": "decoding"' in capsys.readouterr().out


def test_drain_queue_command(open_service, capsys):
    async def seed():
        async with open_service() as service:
            await service.catalog.push_queue(["https://example.com/legacy.png"], ImageKind.avatar)

    asyncio.run(seed())
    main(["drain-queue"])
    out = capsys.readouterr().out
    assert "skipped" in out
    assert "migrated" in out
