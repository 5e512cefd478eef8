import asyncio
import json

import httpx
import pytest

from chronicles import config, gateway


def use_transport(monkeypatch, handler):
    def client():
        return httpx.AsyncClient(base_url="https://gateway.test/v1", transport=httpx.MockTransport(handler))

    monkeypatch.setattr(gateway, "get_client", client)


def completion(content):
    return httpx.Response(200, json={"choices": [{"message": {"role": "assistant", "content": content}}]})


def test_narrate_sends_system_prompt_first(monkeypatch):
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["auth"] = request.headers["authorization"]
        seen["body"] = json.loads(request.content)
        return completion("  The torches gutter.  ")

    use_transport(monkeypatch, handler)
    turns = [{"role": "user", "content": "I light a torch."}]
    text = asyncio.run(gateway.narrate(turns, "Be grim."))
    assert text == "The torches gutter."
    assert seen["path"] == "/v1/chat/completions"
    assert seen["auth"] == "Bearer test-key"
    assert seen["body"]["model"] == config.NARRATOR_MODEL
    assert seen["body"]["messages"][0] == {"role": "system", "content": "Be grim."}
    assert seen["body"]["messages"][1:] == turns


def test_narrate_falls_back_to_default_persona(monkeypatch):
    seen = {}

    def handler(request):
        seen["body"] = json.loads(request.content)
        return completion("Hello.")

    use_transport(monkeypatch, handler)
    asyncio.run(gateway.narrate([], None))
    assert seen["body"]["messages"][0]["content"] == config.DEFAULT_NARRATOR_PROMPT


@pytest.mark.parametrize(
    "status_code,error",
    [(429, gateway.RateLimited), (402, gateway.QuotaExceeded), (500, gateway.UpstreamError), (503, gateway.UpstreamError)],
)
def test_gateway_status_mapping(monkeypatch, status_code, error):
    use_transport(monkeypatch, lambda request: httpx.Response(status_code, text="upstream says no"))
    with pytest.raises(error) as excinfo:
        asyncio.run(gateway.narrate([{"role": "user", "content": "hi"}], None))
    assert "upstream says no" not in excinfo.value.message


def test_empty_completion_is_upstream_error(monkeypatch):
    use_transport(monkeypatch, lambda request: completion("   "))
    with pytest.raises(gateway.UpstreamError):
        asyncio.run(gateway.narrate([{"role": "user", "content": "hi"}], None))


def test_transport_failure_is_upstream_error(monkeypatch):
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    use_transport(monkeypatch, handler)
    with pytest.raises(gateway.UpstreamError):
        asyncio.run(gateway.narrate([{"role": "user", "content": "hi"}], None))


def test_missing_api_key(monkeypatch):
    monkeypatch.setattr(config, "LLM_API_KEY", None)
    with pytest.raises(gateway.UpstreamError):
        asyncio.run(gateway.narrate([{"role": "user", "content": "hi"}], None))


def test_generate_image_reads_first_image(monkeypatch):
    seen = {}

    def handler(request):
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "choices": [
                    {
                        "message": {
                            "content": "",
                            "images": [{"image_url": {"url": "data:image/png;base64,AAAA"}}],
                        }
                    }
                ]
            },
        )

    use_transport(monkeypatch, handler)
    url = asyncio.run(gateway.generate_image("a ruined tower at dusk"))
    assert url == "data:image/png;base64,AAAA"
    assert seen["body"]["model"] == config.IMAGE_MODEL
    assert seen["body"]["modalities"] == ["image", "text"]
    assert "a ruined tower at dusk" in seen["body"]["messages"][0]["content"]


def test_generate_image_without_image(monkeypatch):
    use_transport(monkeypatch, lambda request: completion("I cannot draw."))
    with pytest.raises(gateway.UpstreamError):
        asyncio.run(gateway.generate_image("anything"))
