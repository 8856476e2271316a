"""FFmpeg engine — runs filter graphs through the ffmpeg executable.

Buffers are files in a private temporary directory; stderr is the log
stream. A process killed by a signal is reported with the abort signature.
"""

from __future__ import annotations

import shutil
import subprocess
import tempfile
from pathlib import Path

import structlog

from podmix.engine.base import Engine
from podmix.engine.graph import FilterGraph, OutputSpec, fmt_num
from podmix.errors import EngineAbortedError, EngineError

logger = structlog.get_logger()


def render_filter_complex(graph: FilterGraph) -> str:
    """``[i:a]chain[bN];...;[b0][b1]combine[out]``."""
    parts: list[str] = []
    labels: list[str] = []
    for i, branch in enumerate(graph.branches):
        chain = ",".join(node.to_ffmpeg() for node in branch.filters) or "anull"
        label = f"[b{i}]" if graph.combine is not None else "[out]"
        parts.append(f"[{branch.input}:a]{chain}{label}")
        labels.append(label)
    if graph.combine is not None:
        parts.append("".join(labels) + graph.combine.to_ffmpeg(len(labels)) + "[out]")
    return ";".join(parts)


class FFmpegEngine(Engine):
    backend = "ffmpeg"

    def __init__(self, binary: str = "ffmpeg", work_dir: Path | None = None, *, log_lines: bool = False) -> None:
        super().__init__(log_lines=log_lines)
        self.binary = binary
        self._work_dir = work_dir
        self._dir: Path | None = None

    def start(self) -> None:
        if shutil.which(self.binary) is None:
            raise EngineError(f"ffmpeg executable not found: {self.binary}")
        if self._work_dir is not None:
            self._work_dir.mkdir(parents=True, exist_ok=True)
        self._dir = Path(tempfile.mkdtemp(prefix="podmix-", dir=self._work_dir))
        super().start()

    def dispose(self) -> None:
        if self._dir is not None:
            shutil.rmtree(self._dir, ignore_errors=True)
            self._dir = None
        super().dispose()

    # ── Buffer store ──

    def _path(self, name: str) -> Path:
        if self._dir is None:
            raise EngineError("ffmpeg engine has no buffer directory")
        if not name or "/" in name or "\\" in name or name in (".", ".."):
            raise EngineError(f"Invalid buffer name: {name!r}")
        return self._dir / name

    def exists(self, name: str) -> bool:
        return self._dir is not None and self._path(name).exists()

    def list_files(self) -> list[str]:
        if self._dir is None:
            return []
        return sorted(p.name for p in self._dir.iterdir() if p.is_file())

    def _read(self, name: str) -> bytes:
        return self._path(name).read_bytes()

    def _write(self, name: str, data: bytes) -> None:
        self._path(name).write_bytes(data)

    def _delete(self, name: str) -> None:
        self._path(name).unlink()

    # ── Execution ──

    def build_args(self, graph: FilterGraph) -> list[str]:
        args = [self.binary, "-hide_banner", "-nostdin", "-y"]
        for spec in graph.inputs:
            if spec.loop:
                args += ["-stream_loop", "-1"]
            if spec.seek is not None:
                args += ["-ss", fmt_num(spec.seek)]
            if spec.duration is not None:
                args += ["-t", fmt_num(spec.duration)]
            args += ["-i", str(self._path(spec.name))]

        if graph.is_simple:
            chain = ",".join(node.to_ffmpeg() for node in graph.branches[0].filters)
            if chain:
                args += ["-af", chain]
        else:
            args += ["-filter_complex", render_filter_complex(graph), "-map", "[out]"]

        return args + self._output_args(graph.output)

    def _output_args(self, output: OutputSpec) -> list[str]:
        args: list[str] = []
        if output.sample_rate:
            args += ["-ar", str(output.sample_rate)]
        if output.channels:
            args += ["-ac", str(output.channels)]
        if output.name is None:
            return args + ["-f", "null", "-"]
        args += ["-c:a", output.codec]
        if output.bitrate:
            args += ["-b:a", output.bitrate]
        return args + ["-f", output.container, str(self._path(output.name))]

    def _run(self, graph: FilterGraph) -> None:
        args = self.build_args(graph)
        logger.debug("ffmpeg.exec", graph=graph.label, args=" ".join(args[1:]))
        try:
            proc = subprocess.run(args, capture_output=True, text=True, check=False)
        except OSError as exc:
            raise EngineError(f"Cannot run ffmpeg: {exc}") from exc

        for line in proc.stderr.splitlines():
            self.emit(line)

        if proc.returncode < 0:
            self.emit(f"Aborted() (ffmpeg killed by signal {-proc.returncode})")
            raise EngineAbortedError(f"ffmpeg aborted: {graph.label}", returncode=proc.returncode)
        if proc.returncode != 0:
            tail = "\n".join(proc.stderr.strip().splitlines()[-3:])
            raise EngineError(f"ffmpeg failed ({proc.returncode}): {graph.label}\n{tail}", returncode=proc.returncode)
