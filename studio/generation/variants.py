from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Mapping


@dataclass(frozen=True)
class GenerationVariant:
    """A fixed model + parameter set exposed as one generation route."""

    kind: str  # image|video|audio
    model: str  # owner/name:version
    params: Mapping[str, Any] = field(default_factory=dict)
    prompt_field: str = "prompt"
    # Noun used in the client-facing error message.
    error_noun: str = ""

    @property
    def route(self) -> str:
        return f"/generate-{self.kind}"

    @property
    def result_key(self) -> str:
        return f"{self.kind}Url"

    @property
    def error_message(self) -> str:
        return f"Failed to generate {self.error_noun or self.kind}"

    def build_input(self, prompt: str) -> Dict[str, Any]:
        return {**self.params, self.prompt_field: prompt}


IMAGE = GenerationVariant(
    kind="image",
    model="stability-ai/stable-diffusion:ac732df83cea7fff18b8472768c88ad041fa750ff7682a21affe81863cbe77e4",
    params={
        "width": 768,
        "height": 768,
        "scheduler": "K_EULER",
        "num_outputs": 1,
        "guidance_scale": 7.5,
        "num_inference_steps": 50,
    },
)

VIDEO = GenerationVariant(
    kind="video",
    model="cjwbw/damo-text-to-video:1e205ea73084bd17a0a3b43396e49ba0d6bc2e754e9283b2df49fad2dcf95755",
    params={
        "fps": 8,
        "num_frames": 50,
        "num_inference_steps": 50,
    },
    # Existing clients match on this exact string.
    error_noun="image",
)

AUDIO = GenerationVariant(
    kind="audio",
    model="haoheliu/audio-ldm:b61392adecdd660326fc9cfc5398182437dbe5e97b5decfb36e1a36de68b5b95",
    params={
        "duration": "5.0",
        "n_candidates": 3,
        "guidance_scale": 2.5,
    },
    prompt_field="text",
)

VARIANTS: Dict[str, GenerationVariant] = {v.kind: v for v in (IMAGE, VIDEO, AUDIO)}
