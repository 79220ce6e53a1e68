"""Model registry lookups, preferences and catalog pricing."""

from __future__ import annotations

import sys
import threading
import unittest
from decimal import Decimal
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

from inferbot.catalog import CATALOG, DEFAULT_MODELS, build_registry, parse_audio, parse_images, parse_video
from inferbot.errors import ModelNotFound
from inferbot.options import parse_command
from inferbot.registry import ModelRegistry
from inferbot.schemas import Task


class ModelRegistryTests(unittest.TestCase):
    def setUp(self) -> None:
        self.registry = build_registry()

    def test_defaults_are_current_without_preferences(self) -> None:
        for task, name in DEFAULT_MODELS.items():
            self.assertEqual(self.registry.current(task).name, name)
            self.assertEqual(self.registry.current(task, "alice").name, name)

    def test_user_preference_overrides_global_default(self) -> None:
        self.registry.set_current(Task.TEXT2IMAGE, "flux/schnell", user_id="alice")
        self.assertEqual(self.registry.current(Task.TEXT2IMAGE, "alice").name, "flux/schnell")
        self.assertEqual(self.registry.current(Task.TEXT2IMAGE, "bob").name, "fast-sdxl")

    def test_global_default_can_be_changed(self) -> None:
        self.registry.set_current(Task.IMAGE2VIDEO, "kling-video-image")
        self.assertEqual(self.registry.current(Task.IMAGE2VIDEO, "carol").name, "kling-video-image")

    def test_lookup_is_case_insensitive(self) -> None:
        self.assertEqual(self.registry.get(Task.TEXT2IMAGE, "FAST-SDXL").name, "fast-sdxl")

    def test_unknown_model_raises_model_not_found(self) -> None:
        with self.assertRaises(ModelNotFound):
            self.registry.get(Task.TEXT2IMAGE, "does-not-exist")
        with self.assertRaises(ModelNotFound):
            self.registry.set_current(Task.TEXT2IMAGE, "veo2", user_id="alice")
        self.assertEqual(self.registry.current(Task.TEXT2IMAGE, "alice").name, "fast-sdxl")

    def test_list_keeps_catalog_order(self) -> None:
        names = [d.name for d in self.registry.list(Task.TEXT2IMAGE)]
        expected = [d.name for d in CATALOG if d.task == Task.TEXT2IMAGE]
        self.assertEqual(names, expected)

    def test_first_entry_used_when_no_default(self) -> None:
        registry = ModelRegistry(CATALOG)
        self.assertEqual(registry.current(Task.TEXT2IMAGE).name, "fast-sdxl")

    def test_duplicate_descriptor_rejected(self) -> None:
        with self.assertRaises(ValueError):
            ModelRegistry([CATALOG[0], CATALOG[0]])

    def test_concurrent_preferences_stay_consistent(self) -> None:
        names = ["fast-sdxl", "flux/schnell", "hidream-i1-dev"]
        errors = []

        def worker(index: int) -> None:
            user = f"user-{index}"
            for round_ in range(50):
                name = names[(index + round_) % len(names)]
                self.registry.set_current(Task.TEXT2IMAGE, name, user_id=user)
                if self.registry.current(Task.TEXT2IMAGE, user).name != name:
                    errors.append((user, name))

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        self.assertEqual(errors, [])


class CatalogPricingTests(unittest.TestCase):
    def setUp(self) -> None:
        self.registry = build_registry()

    def price(self, task: Task, model: str, args: str) -> Decimal:
        descriptor = self.registry.get(task, model)
        return descriptor.price_for(parse_command(descriptor, args).pricing_options())

    def test_veo2_charges_base_plus_extra_seconds(self) -> None:
        self.assertEqual(self.price(Task.IMAGE2VIDEO, "veo2", "https://example.com/cat.png pan --duration 8"), Decimal("4.00"))
        self.assertEqual(self.price(Task.IMAGE2VIDEO, "veo2", "https://example.com/cat.png pan"), Decimal("2.50"))

    def test_kling_ten_second_video(self) -> None:
        self.assertEqual(self.price(Task.TEXT2VIDEO, "kling-video-text", "a cat --duration 10"), Decimal("4.00"))

    def test_text2image_price_scales_with_image_count(self) -> None:
        self.assertEqual(self.price(Task.TEXT2IMAGE, "fast-sdxl", "cat"), Decimal("0.02"))
        self.assertEqual(self.price(Task.TEXT2IMAGE, "fast-sdxl", "cat --num_images 3"), Decimal("0.06"))

    def test_speech_priced_per_thousand_characters(self) -> None:
        self.assertEqual(self.price(Task.TEXT2SPEECH, "minimax-tts/text-to-speech", "hello"), Decimal("0.10"))
        self.assertEqual(self.price(Task.TEXT2SPEECH, "minimax-tts/text-to-speech", "a" * 1500), Decimal("0.20"))

    def test_veo2_request_formats_duration(self) -> None:
        descriptor = self.registry.get(Task.IMAGE2VIDEO, "veo2")
        parsed = parse_command(descriptor, "https://example.com/cat.png pan --duration 8 --aspect 9:16")
        body = descriptor.build_request(parsed.prompt, parsed.image_url, parsed.options)
        self.assertEqual(body["duration"], "8s")
        self.assertEqual(body["aspect_ratio"], "9:16")
        self.assertEqual(body["image_url"], "https://example.com/cat.png")
        self.assertEqual(body["prompt"], "pan")

    def test_tts_request_nests_voice_settings(self) -> None:
        descriptor = self.registry.get(Task.TEXT2SPEECH, "minimax-tts/text-to-speech")
        parsed = parse_command(descriptor, "hello there --speed 1.5 --sample_rate 32000")
        body = descriptor.build_request(parsed.prompt, parsed.image_url, parsed.options)
        self.assertEqual(body["text"], "hello there")
        self.assertEqual(body["voice_setting"], {"voice_id": "Wise_Woman", "speed": 1.5})
        self.assertEqual(body["audio_setting"], {"sample_rate": 32000})


class ResultParserTests(unittest.TestCase):
    def test_images_enumerated_in_order(self) -> None:
        result = parse_images(
            {
                "images": [
                    {"url": "https://cdn/1.png", "content_type": "image/png", "width": 1024, "height": 1024},
                    {"url": "https://cdn/2.png", "content_type": "image/png"},
                ],
                "seed": 42,
            }
        )
        self.assertEqual([a.url for a in result.artifacts], ["https://cdn/1.png", "https://cdn/2.png"])
        self.assertEqual(result.seed, 42)
        self.assertEqual(result.artifacts[0].width, 1024)

    def test_video_accepts_object_or_bare_url(self) -> None:
        self.assertEqual(parse_video({"video": {"url": "https://cdn/v.mp4"}}).artifacts[0].content_type, "video/mp4")
        self.assertEqual(parse_video({"video_url": "https://cdn/v.mp4"}).artifacts[0].url, "https://cdn/v.mp4")

    def test_audio_defaults_to_mpeg(self) -> None:
        artifact = parse_audio({"audio": {"url": "https://cdn/a", "file_name": "speech.mp3"}}).artifacts[0]
        self.assertEqual(artifact.content_type, "audio/mpeg")
        self.assertEqual(artifact.file_name, "speech.mp3")

    def test_missing_output_yields_no_artifacts(self) -> None:
        self.assertEqual(parse_images({"images": []}).artifacts, [])
        self.assertEqual(parse_video({}).artifacts, [])


if __name__ == "__main__":
    unittest.main()
