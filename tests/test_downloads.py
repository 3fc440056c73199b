import pytest
import requests

from local_llm_chat.downloads import download_model, model_download_url
from local_llm_chat.llm.types import ModelDescriptor, ModelFileError


class DummyResponse:
    def __init__(self, status_code=200, chunks=None):
        self.status_code = status_code
        self._chunks = chunks or []
        self.headers = {"Content-Length": str(sum(len(c) for c in self._chunks))}
        self.closed = False

    def iter_content(self, chunk_size):
        yield from self._chunks

    def close(self):
        self.closed = True


def _model(tmp_path):
    return ModelDescriptor("m1", "Model", "org/repo", "model.gguf", str(tmp_path / "models" / "model.gguf"))


def test_download_url_uses_resolve_path():
    model = ModelDescriptor("m1", "Model", "org/repo", "model.gguf", "./model.gguf")
    assert model_download_url("https://huggingface.co/", model) == "https://huggingface.co/org/repo/resolve/main/model.gguf"


def test_download_writes_file_and_sends_token(tmp_path, monkeypatch):
    seen = {}

    def fake_get(url, headers, stream, timeout):
        seen["url"] = url
        seen["headers"] = headers
        return DummyResponse(chunks=[b"GG", b"UF"])

    monkeypatch.setattr("local_llm_chat.downloads.requests.get", fake_get)
    progress = []

    path = download_model(_model(tmp_path), token="secret", on_progress=lambda done, total: progress.append(done))

    assert path.read_bytes() == b"GGUF"
    assert seen["headers"] == {"Authorization": "Bearer secret"}
    assert progress == [2, 4]
    assert not path.with_name("model.gguf.part").exists()


def test_download_http_error_leaves_no_file(tmp_path, monkeypatch):
    monkeypatch.delenv("HF_TOKEN", raising=False)
    monkeypatch.delenv("HUGGING_FACE_HUB_TOKEN", raising=False)
    monkeypatch.setattr(
        "local_llm_chat.downloads.requests.get",
        lambda url, headers, stream, timeout: DummyResponse(status_code=404),
    )

    with pytest.raises(ModelFileError, match="HTTP 404"):
        download_model(_model(tmp_path))
    assert not (tmp_path / "models" / "model.gguf").exists()


def test_download_network_error_is_model_file_error(tmp_path, monkeypatch):
    def fake_get(url, headers, stream, timeout):
        raise requests.ConnectionError("offline")

    monkeypatch.setattr("local_llm_chat.downloads.requests.get", fake_get)
    with pytest.raises(ModelFileError, match="offline"):
        download_model(_model(tmp_path))
