"""Built-in example policies.

Each preset pairs a network policy with a snippet that exercises it.
"""

from pydantic import BaseModel, ConfigDict, Field

from safesandbox.policy import CacheStrategy, NetworkPolicy


class Preset(BaseModel):
    """A named policy with demonstration code."""

    model_config = ConfigDict(frozen=True)

    id: str
    label: str
    policy: NetworkPolicy
    code: str = Field(default="", description="Snippet to run under the policy")


_PRESETS: dict[str, Preset] = {
    preset.id: preset
    for preset in (
        Preset(
            id="jsonplaceholder",
            label="JSONPlaceholder (CORS OK)",
            policy=NetworkPolicy(allow=["jsonplaceholder.typicode.com"]),
            code='fetch("https://jsonplaceholder.typicode.com/todos/1").then(r => r.json()).then(console.log);',
        ),
        Preset(
            id="google",
            label="Google (CORS Proxy)",
            policy=NetworkPolicy(allow=["www.google.com"], proxyUrl="/_proxy"),
            code='fetch("https://www.google.com").then(r => console.log("Status:", r.status));',
        ),
        Preset(
            id="blocked",
            label="Block All",
            policy=NetworkPolicy(allow=[]),
            code='fetch("https://example.com");',
        ),
        Preset(
            id="virtualfiles",
            label="Virtual Files",
            policy=NetworkPolicy(files={"/config.json": '{"version": "1.0"}', "/data.txt": "Hello World"}),
            code='fetch("/config.json").then(r => r.json()).then(d => console.log("Config:", d));',
        ),
        Preset(
            id="caching",
            label="Cache Strategy",
            policy=NetworkPolicy(
                allow=["jsonplaceholder.typicode.com"],
                cacheStrategy=CacheStrategy.CACHE_FIRST,
            ),
            code='fetch("https://jsonplaceholder.typicode.com/posts/1");',
        ),
        Preset(
            id="security",
            label="Security Isolation",
            policy=NetworkPolicy(),
            code='try { window.top.location.href; console.error("FAIL"); } catch (e) { console.log("PASS"); }',
        ),
        Preset(
            id="htmlContent",
            label="External HTML (MDN)",
            policy=NetworkPolicy(allow=["developer.mozilla.org"], proxyUrl="/_proxy"),
            code='fetch("https://developer.mozilla.org/").then(r => r.text()).then(h => console.log(h.length));',
        ),
    )
}


def get_preset(preset_id: str) -> Preset:
    """Get a preset by id.

    Raises:
        ValueError: If the preset id is unknown
    """
    if preset_id not in _PRESETS:
        available = ", ".join(_PRESETS)
        msg = f"Unknown preset '{preset_id}'. Available: {available}"
        raise ValueError(msg)
    return _PRESETS[preset_id]


def list_presets() -> list[Preset]:
    return list(_PRESETS.values())


__all__ = ["Preset", "get_preset", "list_presets"]
