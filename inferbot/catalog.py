"""Compiled-in model catalog for the fal.ai queue.

Each entry pairs a fal endpoint with its pricing rule, accepted options, a
request builder and a result parser. Prices are in USD.
"""

from __future__ import annotations

import math
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Optional

from .schemas import Artifact, FinalResult, ModelDescriptor, ParamSpec, Task

IMAGE_SIZES = ("square_hd", "square", "portrait_4_3", "portrait_16_9", "landscape_4_3", "landscape_16_9")
ULTRA_ASPECTS = ("21:9", "16:9", "4:3", "3:2", "1:1", "2:3", "3:4", "9:16", "9:21")
VIDEO_ASPECTS = ("16:9", "9:16", "1:1")
TTS_VOICES = (
    "Wise_Woman", "Friendly_Person", "Inspirational_girl", "Deep_Voice_Man", "Calm_Woman",
    "Casual_Guy", "Lively_Girl", "Patient_Man", "Young_Knight", "Determined_Man", "Lovely_Girl",
    "Decent_Boy", "Imposing_Manner", "Elegant_Man", "Abbess", "Sweet_Girl_2", "Exuberant_Girl",
)
TTS_EMOTIONS = ("happy", "sad", "angry", "fearful", "disgusted", "surprised", "neutral")


# ---------------------------------------------------------------------------
# Pricing rules
# ---------------------------------------------------------------------------


def duration_seconds(value: Any, default: int = 5) -> int:
    if value is None or value == "":
        return default
    text = str(value).strip().lower().rstrip("s")
    try:
        return int(float(text))
    except ValueError:
        return default


def flat_price(price: Decimal) -> Callable[[Dict[str, Any]], Decimal]:
    return lambda options: price


def per_image_price(price: Decimal) -> Callable[[Dict[str, Any]], Decimal]:
    def pricing(options: Dict[str, Any]) -> Decimal:
        count = int(options.get("num_images") or 1)
        return price * max(1, count)

    return pricing


def base_plus_extra_seconds(base: Decimal, per_second: Decimal, base_seconds: int = 5) -> Callable[[Dict[str, Any]], Decimal]:
    """Price for ``base_seconds`` of video plus ``per_second`` for every second beyond."""

    def pricing(options: Dict[str, Any]) -> Decimal:
        seconds = duration_seconds(options.get("duration"), base_seconds)
        extra = max(0, seconds - base_seconds)
        return base + per_second * extra

    return pricing


def per_thousand_chars(price: Decimal) -> Callable[[Dict[str, Any]], Decimal]:
    def pricing(options: Dict[str, Any]) -> Decimal:
        text = str(options.get("prompt") or "")
        blocks = max(1, math.ceil(len(text) / 1000))
        return price * blocks

    return pricing


# ---------------------------------------------------------------------------
# Request builders
# ---------------------------------------------------------------------------


def _clean(options: Dict[str, Any], skip: Iterable[str] = ("prompt",)) -> Dict[str, Any]:
    skipped = set(skip)
    return {key: value for key, value in options.items() if value is not None and key not in skipped}


def prompt_request(prompt: str, image_url: Optional[str], options: Dict[str, Any]) -> Dict[str, Any]:
    body: Dict[str, Any] = {"prompt": prompt}
    if image_url:
        body["image_url"] = image_url
    body.update(_clean(options))
    return body


def image_only_request(prompt: str, image_url: Optional[str], options: Dict[str, Any]) -> Dict[str, Any]:
    body: Dict[str, Any] = {"image_url": image_url}
    if prompt:
        body["prompt"] = prompt
    body.update(_clean(options))
    return body


def veo_request(prompt: str, image_url: Optional[str], options: Dict[str, Any]) -> Dict[str, Any]:
    body = prompt_request(prompt, image_url, options)
    body["duration"] = f"{duration_seconds(options.get('duration'))}s"
    return body


def kling_request(prompt: str, image_url: Optional[str], options: Dict[str, Any]) -> Dict[str, Any]:
    body = prompt_request(prompt, image_url, options)
    body["duration"] = str(duration_seconds(options.get("duration")))
    return body


def minimax_tts_request(prompt: str, image_url: Optional[str], options: Dict[str, Any]) -> Dict[str, Any]:
    voice = {
        "voice_id": options.get("voice_id") or "Wise_Woman",
        "speed": options.get("speed"),
        "vol": options.get("vol"),
        "pitch": options.get("pitch"),
        "emotion": options.get("emotion"),
    }
    audio = {
        "sample_rate": options.get("sample_rate"),
        "bitrate": options.get("bitrate"),
        "format": options.get("format"),
        "channel": options.get("channel"),
    }
    body: Dict[str, Any] = {"text": prompt, "voice_setting": {k: v for k, v in voice.items() if v is not None}}
    audio_setting = {k: v for k, v in audio.items() if v is not None}
    if audio_setting:
        body["audio_setting"] = audio_setting
    return body


# ---------------------------------------------------------------------------
# Result parsers
# ---------------------------------------------------------------------------


def _artifact(entry: Any, default_type: str) -> Optional[Artifact]:
    if isinstance(entry, str) and entry:
        return Artifact(url=entry, content_type=default_type)
    if not isinstance(entry, dict) or not entry.get("url"):
        return None
    return Artifact(
        url=str(entry["url"]),
        content_type=str(entry.get("content_type") or default_type),
        width=entry.get("width"),
        height=entry.get("height"),
        file_name=entry.get("file_name"),
    )


def parse_images(payload: Dict[str, Any]) -> FinalResult:
    entries: List[Any] = []
    if isinstance(payload.get("images"), list):
        entries.extend(payload["images"])
    elif payload.get("image"):
        entries.append(payload["image"])
    artifacts = [a for a in (_artifact(e, "image/jpeg") for e in entries) if a is not None]
    seed = payload.get("seed")
    return FinalResult(artifacts=artifacts, seed=int(seed) if isinstance(seed, int) else None)


def parse_video(payload: Dict[str, Any]) -> FinalResult:
    artifact = _artifact(payload.get("video") or payload.get("video_url"), "video/mp4")
    return FinalResult(artifacts=[artifact] if artifact else [])


def parse_audio(payload: Dict[str, Any]) -> FinalResult:
    artifact = _artifact(payload.get("audio") or payload.get("audio_url"), "audio/mpeg")
    return FinalResult(artifacts=[artifact] if artifact else [])


PARSERS_BY_TASK: Dict[Task, Callable[[Dict[str, Any]], FinalResult]] = {
    Task.TEXT2IMAGE: parse_images,
    Task.IMAGE2IMAGE: parse_images,
    Task.TEXT2SPEECH: parse_audio,
    Task.TEXT2VIDEO: parse_video,
    Task.IMAGE2VIDEO: parse_video,
}


# ---------------------------------------------------------------------------
# Option schemas
# ---------------------------------------------------------------------------

NUM_IMAGES = ParamSpec("num_images", "int", 1, minimum=1, maximum=4, help="Number of images to generate")
IMAGE_SIZE = ParamSpec("image_size", "choice", None, choices=IMAGE_SIZES, help="Output dimensions")
SEED = ParamSpec("seed", "int", None, help="Specific seed for reproducibility")
STEPS = ParamSpec("num_inference_steps", "int", None, minimum=1, maximum=100, help="Number of inference steps")
GUIDANCE = ParamSpec("guidance_scale", "float", None, minimum=0, maximum=20, help="Prompt adherence")
NEGATIVE = ParamSpec("negative_prompt", "str", None, aliases=("negative", "negative-prompt"), help="Things to avoid")
SAFETY = ParamSpec("enable_safety_checker", "bool", None, help="Enable safety filter (default: true)")
TOLERANCE = ParamSpec("safety_tolerance", "choice", None, choices=("1", "2", "3", "4", "5", "6"), help="Safety strictness")
FORMAT = ParamSpec("output_format", "choice", None, choices=("jpeg", "png"), help="Image format")
ASPECT_ULTRA = ParamSpec("aspect_ratio", "choice", None, choices=ULTRA_ASPECTS, help="Output aspect ratio")
RAW = ParamSpec("raw", "bool", None, help="Generate less processed image")


def video_schema(durations: Iterable[int], negative_default: Optional[str] = None) -> List[ParamSpec]:
    return [
        ParamSpec("duration", "choice", "5", choices=tuple(str(d) for d in durations), help="Video duration in seconds"),
        ParamSpec("aspect_ratio", "choice", "16:9", choices=VIDEO_ASPECTS, aliases=("aspect",), help="Aspect ratio"),
        ParamSpec("negative_prompt", "str", negative_default, aliases=("negative", "negative-prompt"), help="Things to avoid"),
        ParamSpec("cfg_scale", "float", 0.5, minimum=0, maximum=1, aliases=("cfg", "cfg-scale"), help="Configuration scale"),
    ]


TTS_SCHEMA = [
    ParamSpec("voice_id", "choice", "Wise_Woman", choices=TTS_VOICES, help="Voice to use"),
    ParamSpec("speed", "float", None, minimum=0.5, maximum=2.0, help="Speech speed (0.5-2.0)"),
    ParamSpec("vol", "float", None, minimum=0, maximum=10, help="Volume (0-10)"),
    ParamSpec("pitch", "int", None, minimum=-12, maximum=12, help="Voice pitch (-12 to 12)"),
    ParamSpec("emotion", "choice", None, choices=TTS_EMOTIONS, help="Voice emotion"),
    ParamSpec("sample_rate", "int", None, choices=("8000", "16000", "22050", "24000", "32000", "44100"), help="Sample rate"),
    ParamSpec("bitrate", "int", None, choices=("32000", "64000", "128000", "256000"), help="Bitrate"),
    ParamSpec("format", "choice", None, choices=("mp3", "pcm", "flac"), help="Audio format"),
    ParamSpec("channel", "int", None, choices=("1", "2"), help="1 (mono) or 2 (stereo)"),
]


USAGE: Dict[Task, str] = {
    Task.TEXT2IMAGE: "!text2image <prompt> [--option value]...",
    Task.IMAGE2IMAGE: "!image2image <image_url> [prompt] [--option value]...",
    Task.TEXT2SPEECH: "!text2speech <text> [--option value]...",
    Task.TEXT2VIDEO: "!text2video <prompt> [--option value]...",
    Task.IMAGE2VIDEO: "!image2video <image_url> <prompt> [--option value]...",
}


def render_help(task: Task, name: str, description: str, pricing_note: str, schema: Iterable[ParamSpec]) -> str:
    lines = [f"Model: {name}", description, "", f"Usage: {USAGE[task]}", "", f"Pricing: {pricing_note}"]
    params = list(schema)
    if params:
        lines.append("")
        lines.append("Parameters:")
        for spec in params:
            detail = spec.help
            if spec.choices and len(spec.choices) <= 10:
                detail += f" ({', '.join(spec.choices)})"
            if spec.default is not None:
                detail += f" [default: {spec.default}]"
            flags = ", ".join(f"--{alias}" for alias in (spec.name,) + spec.aliases)
            lines.append(f"• {flags}: {detail}")
    return "\n".join(lines)


def model(
    task: Task,
    name: str,
    endpoint_path: str,
    price: str,
    description: str,
    pricing_note: str,
    schema: Iterable[ParamSpec] = (),
    pricing: Optional[Callable[[Decimal], Callable[[Dict[str, Any]], Decimal]]] = None,
    build: Callable[[str, Optional[str], Dict[str, Any]], Dict[str, Any]] = prompt_request,
    parser: Optional[Callable[[Dict[str, Any]], FinalResult]] = None,
    pricing_fn: Optional[Callable[[Dict[str, Any]], Decimal]] = None,
) -> ModelDescriptor:
    price_usd = Decimal(price)
    specs = list(schema)
    if pricing_fn is None:
        pricing_fn = (pricing or flat_price)(price_usd)
    return ModelDescriptor(
        task=task,
        name=name,
        endpoint_path=endpoint_path,
        price_usd=price_usd,
        description=description,
        help_text=render_help(task, name, description, pricing_note, specs),
        pricing_fn=pricing_fn,
        build_request=build,
        parse_result=parser or PARSERS_BY_TASK[task],
        schema={spec.name: spec for spec in specs},
    )


HIDREAM_SCHEMA = [NEGATIVE, IMAGE_SIZE, STEPS, SEED, NUM_IMAGES, SAFETY, FORMAT]

CATALOG: List[ModelDescriptor] = [
    model(
        Task.TEXT2IMAGE, "fast-sdxl", "fast-sdxl", "0.02",
        "Fast model for generating images quickly",
        "$0.02 per image",
        [NUM_IMAGES, IMAGE_SIZE, SEED, STEPS, GUIDANCE, NEGATIVE, SAFETY, FORMAT],
        pricing=per_image_price,
    ),
    model(
        Task.TEXT2IMAGE, "hidream-i1-full", "hidream-i1-full", "0.10",
        "High-quality model for detailed images (HiDream I1 Full)",
        "$0.10 per image",
        HIDREAM_SCHEMA + [GUIDANCE],
        pricing=per_image_price,
    ),
    model(
        Task.TEXT2IMAGE, "hidream-i1-dev", "hidream-i1-dev", "0.06",
        "Development version of the HiDream model",
        "$0.06 per image",
        HIDREAM_SCHEMA,
        pricing=per_image_price,
    ),
    model(
        Task.TEXT2IMAGE, "hidream-i1-fast", "hidream-i1-fast", "0.03",
        "Faster version of the HiDream model",
        "$0.03 per image",
        HIDREAM_SCHEMA,
        pricing=per_image_price,
    ),
    model(
        Task.TEXT2IMAGE, "flux-pro/v1.1", "flux-pro/v1.1", "0.08",
        "Professional model for high-end image generation (FLUX1.1 pro)",
        "$0.08 per image",
        [IMAGE_SIZE, SEED, NUM_IMAGES, SAFETY, TOLERANCE, FORMAT],
        pricing=per_image_price,
    ),
    model(
        Task.TEXT2IMAGE, "flux-pro/v1.1-ultra", "flux-pro/v1.1-ultra", "0.12",
        "Ultra version of the professional model (FLUX pro ultra)",
        "$0.12 per image",
        [SEED, NUM_IMAGES, SAFETY, TOLERANCE, FORMAT, ASPECT_ULTRA, RAW],
        pricing=per_image_price,
    ),
    model(
        Task.TEXT2IMAGE, "flux/schnell", "flux/schnell", "0.02",
        "Quick model for rapid image generation",
        "$0.02 per image",
        [IMAGE_SIZE, STEPS, SEED, NUM_IMAGES, SAFETY],
        pricing=per_image_price,
    ),
    model(
        Task.IMAGE2IMAGE, "ghiblify", "ghiblify", "0.02",
        "Transforms images into Studio Ghibli style artwork",
        "$0.02 per image",
        [SEED],
        build=image_only_request,
    ),
    model(
        Task.IMAGE2IMAGE, "cartoonify", "cartoonify", "0.02",
        "Transforms images into Pixar like 3d cartoon-style artwork",
        "$0.02 per image",
        [],
        build=image_only_request,
    ),
    model(
        Task.TEXT2SPEECH, "minimax-tts/text-to-speech", "minimax-tts/text-to-speech", "0.10",
        "Text-to-speech model for converting text to audio",
        "$0.10 per 1000 characters",
        TTS_SCHEMA,
        pricing=per_thousand_chars,
        build=minimax_tts_request,
    ),
    model(
        Task.IMAGE2VIDEO, "veo2", "veo2/image-to-video", "2.50",
        "Creates videos from images with realistic motion using Google's Veo 2 model",
        "$2.50 for 5 seconds, $0.50 per additional second",
        [
            ParamSpec("duration", "choice", "5", choices=("5", "6", "7", "8"), help="Video duration in seconds"),
            ParamSpec("aspect_ratio", "choice", "16:9", choices=("auto", "auto_prefer_portrait") + VIDEO_ASPECTS, aliases=("aspect",), help="Aspect ratio"),
        ],
        pricing_fn=base_plus_extra_seconds(Decimal("2.50"), Decimal("0.50")),
        build=veo_request,
    ),
    model(
        Task.IMAGE2VIDEO, "kling-video-image", "kling-video/v2/master/image-to-video", "2.00",
        "Convert images to video using Kling 2.0 Master",
        "$2.00 for 5 seconds, $0.40 per additional second",
        video_schema((5, 10), "blur, distort, and low quality"),
        pricing_fn=base_plus_extra_seconds(Decimal("2.00"), Decimal("0.40")),
        build=kling_request,
    ),
    model(
        Task.IMAGE2VIDEO, "minimax/video-01-live", "minimax/video-01-live/image-to-video", "0.80",
        "Brings 2D illustrations to life",
        "$0.80 per video",
        [ParamSpec("prompt_optimizer", "bool", None, aliases=("prompt-optimizer",), help="Use the prompt optimizer (default: true)")],
    ),
    model(
        Task.TEXT2VIDEO, "kling-video-text", "kling-video/v2/master/text-to-video", "2.00",
        "Generate videos from text using Kling 2.0 Master",
        "$2.00 for 5 seconds, $0.40 per additional second",
        video_schema((5, 10), "blur, distort, and low quality"),
        pricing_fn=base_plus_extra_seconds(Decimal("2.00"), Decimal("0.40")),
        build=kling_request,
    ),
    model(
        Task.TEXT2VIDEO, "minimax/video-01", "minimax/video-01", "0.50",
        "MiniMax Hailuo text-to-video",
        "$0.50 per video",
        [ParamSpec("prompt_optimizer", "bool", None, aliases=("prompt-optimizer",), help="Use the prompt optimizer (default: true)")],
    ),
]

DEFAULT_MODELS: Dict[Task, str] = {
    Task.TEXT2IMAGE: "fast-sdxl",
    Task.IMAGE2IMAGE: "ghiblify",
    Task.TEXT2SPEECH: "minimax-tts/text-to-speech",
    Task.TEXT2VIDEO: "kling-video-text",
    Task.IMAGE2VIDEO: "veo2",
}


def build_registry():
    from .registry import ModelRegistry

    return ModelRegistry(CATALOG, DEFAULT_MODELS)


__all__ = [
    "CATALOG",
    "DEFAULT_MODELS",
    "PARSERS_BY_TASK",
    "build_registry",
    "base_plus_extra_seconds",
    "per_image_price",
    "per_thousand_chars",
    "parse_images",
    "parse_video",
    "parse_audio",
    "duration_seconds",
]
