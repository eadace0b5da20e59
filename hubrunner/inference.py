"""Inference runner contract plus llama.cpp and echo implementations."""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Literal, Mapping, Protocol, Sequence

from hubrunner.errors import InferenceError

logger = logging.getLogger(__name__)

DEFAULT_MAX_TOKENS = 1024
DEFAULT_TEMPERATURE = 0.8
DEFAULT_TOP_K = 40
DEFAULT_TOP_P = 0.95
DEFAULT_CTX_SIZE = 2048
DEFAULT_LLAMA_CLI = "llama-cli"
STDERR_TAIL_CHARS = 2000

RunnerName = Literal["llama-cli", "echo"]


@dataclass(frozen=True)
class GenerationParams:
    max_tokens: int = DEFAULT_MAX_TOKENS
    temperature: float = DEFAULT_TEMPERATURE
    top_k: int = DEFAULT_TOP_K
    top_p: float = DEFAULT_TOP_P
    ctx_size: int = DEFAULT_CTX_SIZE
    threads: int | None = None

    @classmethod
    def from_optional(
        cls,
        *,
        max_tokens: int | None = None,
        temperature: float | None = None,
        top_k: int | None = None,
        top_p: float | None = None,
        ctx_size: int | None = None,
        threads: int | None = None,
    ) -> "GenerationParams":
        """Fill unset values with the built-in generation defaults."""
        return cls(
            max_tokens=DEFAULT_MAX_TOKENS if max_tokens is None else max_tokens,
            temperature=DEFAULT_TEMPERATURE if temperature is None else temperature,
            top_k=DEFAULT_TOP_K if top_k is None else top_k,
            top_p=DEFAULT_TOP_P if top_p is None else top_p,
            ctx_size=DEFAULT_CTX_SIZE if ctx_size is None else ctx_size,
            threads=threads,
        )


class InferenceRunner(Protocol):
    def run(self, model_path: Path, prompt: str, params: GenerationParams) -> str: ...


class LlamaCliRunner:
    """Run one completion through a llama.cpp ``llama-cli`` binary."""

    def __init__(
        self,
        binary: str = DEFAULT_LLAMA_CLI,
        *,
        extra_args: Sequence[str] = (),
        timeout_s: float | None = None,
        env: Mapping[str, str] | None = None,
    ) -> None:
        self.binary = binary
        self.extra_args = list(extra_args)
        self.timeout_s = timeout_s
        self.env = dict(env) if env else None

    def build_command(self, model_path: Path, prompt: str, params: GenerationParams) -> list[str]:
        command = [
            self.binary,
            "-m",
            str(model_path),
            "-p",
            prompt,
            "-n",
            str(params.max_tokens),
            "--temp",
            str(params.temperature),
            "--top-k",
            str(params.top_k),
            "--top-p",
            str(params.top_p),
            "-c",
            str(params.ctx_size),
            "--no-display-prompt",
        ]
        if params.threads is not None:
            command.extend(["-t", str(params.threads)])
        command.extend(self.extra_args)
        return command

    def run(self, model_path: Path, prompt: str, params: GenerationParams) -> str:
        command = self.build_command(model_path, prompt, params)
        logger.debug("Running %s", " ".join(command[:3]))
        env = {**os.environ, **self.env} if self.env else None
        try:
            completed = subprocess.run(
                command,
                capture_output=True,
                text=True,
                timeout=self.timeout_s,
                env=env,
                check=False,
            )
        except FileNotFoundError as exc:
            raise InferenceError(f"Inference binary not found: {self.binary}") from exc
        except subprocess.TimeoutExpired as exc:
            raise InferenceError(f"Inference timed out after {self.timeout_s}s") from exc
        except OSError as exc:
            raise InferenceError(f"Inference binary failed to start: {exc}") from exc
        if completed.returncode != 0:
            stderr_tail = (completed.stderr or "")[-STDERR_TAIL_CHARS:].strip()
            raise InferenceError(f"{self.binary} exited with code {completed.returncode}: {stderr_tail}")
        return completed.stdout.strip()


class EchoRunner:
    """Deterministic runner that echoes the prompt, truncated to ``max_tokens`` words."""

    def run(self, model_path: Path, prompt: str, params: GenerationParams) -> str:
        words = prompt.split()
        return " ".join(words[: params.max_tokens])


def build_runner(name: RunnerName, *, llama_cli: str | None = None, timeout_s: float | None = None) -> InferenceRunner:
    if name == "echo":
        return EchoRunner()
    if name == "llama-cli":
        binary = llama_cli or shutil.which(DEFAULT_LLAMA_CLI) or DEFAULT_LLAMA_CLI
        return LlamaCliRunner(binary, timeout_s=timeout_s)
    raise ValueError(f"Unknown runner '{name}'.")


__all__ = [
    "EchoRunner",
    "GenerationParams",
    "InferenceRunner",
    "LlamaCliRunner",
    "RunnerName",
    "build_runner",
]
