"""Parse ``--option value`` flags out of a command line against a model schema."""

from __future__ import annotations

import shlex
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from .config import FALSE_VALUES, TRUE_VALUES
from .errors import InvalidOption, UserError
from .schemas import ModelDescriptor, ParamSpec, Task


@dataclass
class ParsedCommand:
    prompt: str
    image_url: Optional[str] = None
    options: Dict[str, Any] = field(default_factory=dict)

    def pricing_options(self) -> Dict[str, Any]:
        priced = dict(self.options)
        priced["prompt"] = self.prompt
        return priced


def tokenize(text: str) -> List[str]:
    """Split on whitespace; double quotes group words, apostrophes are literal."""

    lexer = shlex.shlex(text, posix=True)
    lexer.whitespace_split = True
    lexer.quotes = '"'
    lexer.escape = ""
    lexer.commenters = ""
    try:
        return list(lexer)
    except ValueError:
        # Unbalanced double quote: fall back to plain words.
        return text.split()


def _lookup(schema: Dict[str, ParamSpec], flag: str) -> ParamSpec:
    key = flag.lower()
    if key in schema:
        return schema[key]
    for spec in schema.values():
        if key in spec.aliases or key.replace("-", "_") == spec.name:
            return spec
    known = ", ".join(f"--{name}" for name in schema) or "none"
    raise InvalidOption(f"Unknown option --{flag}. Supported options: {known}")


def coerce(spec: ParamSpec, raw: str) -> Any:
    """Convert ``raw`` to the option's type, enforcing choices and bounds."""

    text = raw.strip()
    if spec.kind == "bool":
        lowered = text.lower()
        if lowered in TRUE_VALUES:
            return True
        if lowered in FALSE_VALUES:
            return False
        raise InvalidOption(f"--{spec.name} expects true or false, got {raw!r}")
    if spec.kind in ("int", "float"):
        try:
            value: Any = int(text) if spec.kind == "int" else float(text)
        except ValueError:
            raise InvalidOption(f"--{spec.name} expects a{'n integer' if spec.kind == 'int' else ' number'}, got {raw!r}") from None
        if spec.choices and text not in spec.choices:
            raise InvalidOption(f"Invalid value for --{spec.name}: {raw!r}. Valid options: {', '.join(spec.choices)}")
        if spec.minimum is not None and value < spec.minimum:
            raise InvalidOption(f"--{spec.name} must be at least {spec.minimum}")
        if spec.maximum is not None and value > spec.maximum:
            raise InvalidOption(f"--{spec.name} must be at most {spec.maximum}")
        return value
    if spec.kind == "choice":
        normalised = text.rstrip("s") if spec.name == "duration" else text
        for choice in spec.choices:
            if normalised.lower() == choice.lower():
                return choice
        raise InvalidOption(f"Invalid value for --{spec.name}: {raw!r}. Valid options: {', '.join(spec.choices)}")
    if not text:
        raise InvalidOption(f"--{spec.name} requires a value")
    return text


def split_flags(tokens: List[str], schema: Dict[str, ParamSpec]) -> Tuple[List[str], Dict[str, Any]]:
    positional: List[str] = []
    options: Dict[str, Any] = {}
    index = 0
    while index < len(tokens):
        token = tokens[index]
        index += 1
        if not token.startswith("--") or token == "--":
            positional.append(token)
            continue
        flag = token[2:]
        value: Optional[str] = None
        if "=" in flag:
            flag, value = flag.split("=", 1)
        spec = _lookup(schema, flag)
        if value is None:
            if spec.kind == "bool" and (index >= len(tokens) or tokens[index].lower() not in TRUE_VALUES | FALSE_VALUES):
                value = "true"
            elif index < len(tokens):
                value = tokens[index]
                index += 1
            else:
                raise InvalidOption(f"--{spec.name} requires a value")
        options[spec.name] = coerce(spec, value)
    return positional, options


def parse_command(descriptor: ModelDescriptor, args: str) -> ParsedCommand:
    """Split ``args`` into prompt, image URL and validated options.

    Schema defaults fill options that were not given so that pricing and the
    request body see the same values.
    """

    positional, options = split_flags(tokenize(args), descriptor.schema)
    for name, spec in descriptor.schema.items():
        if name not in options and spec.default is not None:
            options[name] = coerce(spec, str(spec.default))

    image_url: Optional[str] = None
    if descriptor.task.needs_image:
        if not positional:
            raise UserError(f"Please provide an image URL for {descriptor.task.value}.")
        image_url = positional.pop(0)
        if not image_url.lower().startswith(("http://", "https://", "data:")):
            raise UserError(f"Invalid image URL: {image_url}")
    prompt = " ".join(positional).strip()
    if not prompt and descriptor.task in (Task.TEXT2IMAGE, Task.TEXT2VIDEO, Task.IMAGE2VIDEO):
        raise UserError("Please provide a prompt.")
    if not prompt and descriptor.task == Task.TEXT2SPEECH:
        raise UserError("Please provide text to convert to speech.")
    return ParsedCommand(prompt=prompt, image_url=image_url, options=options)


__all__ = ["ParsedCommand", "coerce", "parse_command", "split_flags", "tokenize"]
