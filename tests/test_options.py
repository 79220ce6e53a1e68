from __future__ import annotations

import sys
import unittest
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

from inferbot.catalog import build_registry
from inferbot.errors import InvalidOption, UserError
from inferbot.options import parse_command, split_flags
from inferbot.schemas import Task


class OptionParsingTests(unittest.TestCase):
    def setUp(self) -> None:
        self.registry = build_registry()
        self.sdxl = self.registry.get(Task.TEXT2IMAGE, "fast-sdxl")
        self.ultra = self.registry.get(Task.TEXT2IMAGE, "flux-pro/v1.1-ultra")
        self.kling = self.registry.get(Task.IMAGE2VIDEO, "kling-video-image")

    def test_prompt_and_typed_options(self) -> None:
        parsed = parse_command(self.sdxl, 'a red fox --num_images 2 --guidance_scale 7.5 --negative_prompt "blurry, dark"')
        self.assertEqual(parsed.prompt, "a red fox")
        self.assertEqual(parsed.options["num_images"], 2)
        self.assertEqual(parsed.options["guidance_scale"], 7.5)
        self.assertEqual(parsed.options["negative_prompt"], "blurry, dark")

    def test_equals_syntax_and_bool_values(self) -> None:
        parsed = parse_command(self.ultra, "city at night --raw=true --enable_safety_checker=false")
        self.assertIs(parsed.options["raw"], True)
        self.assertIs(parsed.options["enable_safety_checker"], False)

    def test_bare_bool_flag_means_true(self) -> None:
        parsed = parse_command(self.ultra, "city --raw --aspect_ratio 21:9")
        self.assertIs(parsed.options["raw"], True)
        self.assertEqual(parsed.options["aspect_ratio"], "21:9")

    def test_aliases_map_to_canonical_names(self) -> None:
        parsed = parse_command(self.kling, 'https://example.com/a.png wave --aspect 9:16 --negative "shaky" --cfg 0.7 --duration 10s')
        self.assertEqual(parsed.image_url, "https://example.com/a.png")
        self.assertEqual(parsed.prompt, "wave")
        self.assertEqual(parsed.options["aspect_ratio"], "9:16")
        self.assertEqual(parsed.options["negative_prompt"], "shaky")
        self.assertEqual(parsed.options["cfg_scale"], 0.7)
        self.assertEqual(parsed.options["duration"], "10")

    def test_schema_defaults_fill_missing_options(self) -> None:
        parsed = parse_command(self.kling, "https://example.com/a.png wave")
        self.assertEqual(parsed.options["duration"], "5")
        self.assertEqual(parsed.options["negative_prompt"], "blur, distort, and low quality")
        self.assertEqual(parsed.options["cfg_scale"], 0.5)

    def test_unknown_option_rejected(self) -> None:
        with self.assertRaises(InvalidOption) as ctx:
            parse_command(self.sdxl, "cat --color blue")
        self.assertIn("--color", str(ctx.exception))

    def test_out_of_range_and_bad_types_rejected(self) -> None:
        for args in ("cat --num_images 9", "cat --num_images two", "cat --image_size huge", "cat --seed"):
            with self.subTest(args=args), self.assertRaises(InvalidOption):
                parse_command(self.sdxl, args)
        with self.assertRaises(InvalidOption):
            parse_command(self.kling, "https://example.com/a.png wave --duration 7")

    def test_apostrophes_kept_verbatim(self) -> None:
        tts = self.registry.current(Task.TEXT2SPEECH)
        self.assertEqual(parse_command(tts, "I don't know").prompt, "I don't know")
        parsed = parse_command(self.sdxl, "a cat's hat #cute C:\\temp --seed 4")
        self.assertEqual(parsed.prompt, "a cat's hat #cute C:\\temp")
        self.assertEqual(parsed.options["seed"], 4)

    def test_double_quotes_group_and_unbalanced_fall_back(self) -> None:
        parsed = parse_command(self.sdxl, 'cat --negative_prompt "blurry, dark"')
        self.assertEqual(parsed.options["negative_prompt"], "blurry, dark")
        parsed = parse_command(self.sdxl, 'cat --negative_prompt "oops')
        self.assertEqual(parsed.options["negative_prompt"], '"oops')

    def test_image_tasks_require_url(self) -> None:
        with self.assertRaises(UserError):
            parse_command(self.kling, "just a prompt")

    def test_prompt_required_for_text2image(self) -> None:
        with self.assertRaises(UserError):
            parse_command(self.sdxl, "--num_images 2")

    def test_split_flags_keeps_positional_order(self) -> None:
        positional, options = split_flags(["a", "--seed", "3", "b"], self.sdxl.schema)
        self.assertEqual(positional, ["a", "b"])
        self.assertEqual(options, {"seed": 3})


if __name__ == "__main__":
    unittest.main()
