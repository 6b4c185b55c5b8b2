"""Unit tests for the checkin-qr-ingest command."""

from __future__ import annotations

import logging
from types import SimpleNamespace

from checkin_service.ingestion.cli import build_parser
from checkin_service.ingestion.main import _config_from_args, _dry_run


class TestParser:
    def test_defaults(self):
        args = build_parser().parse_args(["uploads/batch.pdf"])
        assert args.object_key == "uploads/batch.pdf"
        assert args.pages_per_student is None
        assert args.format is None
        assert args.keep_source is False
        assert args.dry_run is False

    def test_overrides_applied_to_config(self, monkeypatch):
        monkeypatch.setenv("CHECKIN_QR_FOLDER_ID", "folder-1")
        monkeypatch.setenv("CHECKIN_SUBSCRIBE_GRACE_SECONDS", "5")
        args = build_parser().parse_args(
            ["uploads/batch.pdf", "--pages-per-student", "0", "--format", "pdf", "--keep-source"]
        )

        cfg = _config_from_args(args)
        assert cfg.pages_per_student == 0
        assert cfg.upload_format == "pdf"
        assert cfg.delete_source_after_job is False
        assert cfg.subscribe_grace_seconds == 0.0
        assert cfg.qr_folder_id == "folder-1"


class TestDryRun:
    async def test_reports_matches_without_side_effects(
        self, caplog, fake_objects, fake_roster, fake_files, batch_controller, three_student_pdf
    ):
        fake_objects.objects["uploads/batch.pdf"] = three_student_pdf
        services = SimpleNamespace(object_store=fake_objects, roster=fake_roster, batch=batch_controller)

        with caplog.at_level(logging.INFO, logger="checkin_service.ingestion"):
            code = await _dry_run(services, "uploads/batch.pdf")  # type: ignore[arg-type]

        assert code == 0
        assert "[DRY-RUN] 2 of 3 segments match the roster" in caplog.text
        assert "id=3 Carol White -> unmatched" in caplog.text
        assert "id=1 Alice Smith -> matched 1" in caplog.text
        assert fake_files.uploads == []
        assert fake_roster.student_writes == 0
        assert "uploads/batch.pdf" in fake_objects.objects
