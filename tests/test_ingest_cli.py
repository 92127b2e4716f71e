from pathlib import Path

import pytest

from docqa.config import Settings
from docqa.db import get_engine
from docqa.ingest import main
from docqa.services.rag.status import StatusTracker


class FakeEmbeddingClient:
    def __init__(self, **kwargs: object) -> None:
        self.options = kwargs

    def embed_texts(self, texts: list[str]) -> list[list[float]]:
        return [[float(len(text)), 1.0] for text in texts]


def test_ingest_cli_indexes_a_text_file(
    settings: Settings,
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
    capsys: pytest.CaptureFixture[str],
) -> None:
    monkeypatch.setattr("docqa.ingest.OpenAICompatibleEmbeddingClient", FakeEmbeddingClient)
    source = tmp_path / "notes.md"
    source.write_text("Quarterly budget review.\fSafety briefing on Monday.", encoding="utf-8")

    main(["--file", str(source), "--owner-id", "user-1", "--document-id", "doc-cli", "--create-tables"])

    output = capsys.readouterr().out
    assert "[docqa-ingest] completed document_id=doc-cli pages=2 chunks=2" in output
    assert StatusTracker(get_engine()).get_status("doc-cli").status == "completed"
    assert (Path(settings.object_store_dir) / "doc-cli.bin").read_bytes() == source.read_bytes()


def test_ingest_cli_exits_non_zero_for_missing_file(settings: Settings, tmp_path: Path) -> None:
    with pytest.raises(SystemExit) as exited:
        main(["--file", str(tmp_path / "missing.pdf"), "--owner-id", "user-1"])

    assert exited.value.code == 2


def test_ingest_cli_reports_processing_failures(
    settings: Settings,
    tmp_path: Path,
    capsys: pytest.CaptureFixture[str],
) -> None:
    source = tmp_path / "empty.txt"
    source.write_bytes(b"")

    with pytest.raises(SystemExit) as exited:
        main(["--file", str(source), "--owner-id", "user-1", "--create-tables"])

    assert exited.value.code == 1
    assert "Uploaded document is empty" in capsys.readouterr().err
