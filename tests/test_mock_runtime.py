from local_llm_chat.llm.runtimes.mock_runtime import MockRuntime
from local_llm_chat.llm.types import GenerationRequest, Message, Role


def test_mock_echoes_last_user_message_and_streams_it():
    runtime = MockRuntime()
    request = GenerationRequest(
        messages=[
            Message(Role.USER, "first"),
            Message(Role.ASSISTANT, "answer"),
            Message(Role.USER, "second"),
        ],
        model_id="m",
        model_path="/m.gguf",
    )
    pieces = []

    result = runtime.generate(request, pieces.append)

    assert runtime.is_available() is True
    assert result.text.startswith("[MOCK] received: second |")
    assert "".join(pieces) == result.text
    assert runtime.generate(request, lambda piece: None).text == result.text
