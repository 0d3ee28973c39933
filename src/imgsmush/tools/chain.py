from __future__ import annotations

from collections.abc import Mapping
import logging
import os
from pathlib import Path
import shutil
import subprocess
import tempfile

from imgsmush.models import (
    ChainPolicy,
    Engine,
    ErrorKind,
    ImageAsset,
    OptimizationResult,
    OptimizeError,
    OptimizerCapability,
)

logger = logging.getLogger(__name__)

PATH_PLACEHOLDER = "{path}"


def reduction_percent(initial: int, final: int) -> int:
    """Whole-percent saving; the kept share is rounded half up (200 -> 125 is 37%)."""
    if initial <= 0:
        return 0
    return 100 - (final * 200 + initial) // (2 * initial)


def build_command(cap: OptimizerCapability, target: Path, flag: str | None = None, quality: int | None = None) -> list[str]:
    args = list(cap.options)
    if flag and quality is not None:
        args.append(flag.format(quality=quality))
    if PATH_PLACEHOLDER in args:
        args = [str(target) if a == PATH_PLACEHOLDER else a for a in args]
    else:
        args.append(str(target))
    return [cap.path, *args]


def _run_tool(cmd: list[str], name: str, cwd: Path, timeout: float) -> None:
    try:
        proc = subprocess.run(
            cmd,
            cwd=str(cwd),
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False,
        )
    except subprocess.TimeoutExpired as exc:
        raise OptimizeError(
            ErrorKind.OPTIMIZER_EXECUTION_FAILED,
            f"{name} timed out after {timeout:g}s",
            tool=name,
        ) from exc
    except OSError as exc:
        raise OptimizeError(
            ErrorKind.OPTIMIZER_EXECUTION_FAILED,
            f"{name} could not be started: {exc}",
            tool=name,
        ) from exc

    if proc.returncode != 0:
        output = (proc.stderr or proc.stdout or "").strip()
        detail = output.splitlines()[-1] if output else "no output"
        raise OptimizeError(
            ErrorKind.OPTIMIZER_EXECUTION_FAILED,
            f"{name} exited with status {proc.returncode}: {detail}",
            tool=name,
        )


def _working_copy(path: Path) -> Path:
    stem = path.name.split(".", 1)[0]
    fd, tmp = tempfile.mkstemp(dir=str(path.parent), prefix=f".{stem}.", suffix=path.suffix)
    os.close(fd)
    shutil.copy2(path, tmp)
    return Path(tmp)


def _apply_chain(
    target: Path,
    tools: list[OptimizerCapability],
    policy: ChainPolicy,
    quality: int | None,
) -> list[str]:
    ran: list[str] = []
    for cap in tools:
        cmd = build_command(cap, target, policy.quality_flags.get(cap.name), quality)
        logger.debug("running %s", " ".join(cmd))
        try:
            _run_tool(cmd, cap.name, target.parent, policy.timeout)
        except OptimizeError as exc:
            if not policy.ignore_errors:
                raise
            logger.warning("ignoring %s failure on %s: %s", cap.name, target.name, exc.message)
            continue
        ran.append(cap.name)
        if policy.stop_after_first:
            break
    return ran


def run_chain(
    asset: ImageAsset,
    capabilities: Mapping[str, OptimizerCapability],
    policy: ChainPolicy,
    quality: int | None = None,
    url: str = "#",
) -> OptimizationResult:
    """Optimize ``asset`` in place with the local tools configured for its type.

    The tools work on a temporary copy next to the original. The original is
    replaced atomically only when the chain finished and the gain reaches
    ``policy.threshold``; otherwise it stays byte-identical.
    """
    result = OptimizationResult.for_asset(asset, url=url)
    result.engine = Engine.LOCAL

    tools = [
        capabilities[name]
        for name in policy.tools_for(asset.ext)
        if name in capabilities and capabilities[name].available
    ]
    if not tools:
        return result.fail(
            OptimizeError(ErrorKind.NO_OPTIMIZER_AVAILABLE, f"no optimizer available for .{asset.ext} files")
        )

    initial = asset.path.stat().st_size
    result.src_size = initial
    result.dest_size = initial
    work = _working_copy(asset.path)
    try:
        ran = _apply_chain(work, tools, policy, quality)
        if not ran:
            raise OptimizeError(
                ErrorKind.OPTIMIZER_EXECUTION_FAILED,
                "every optimizer in the chain failed",
                tool=",".join(t.name for t in tools),
            )
        final = work.stat().st_size
        percent = reduction_percent(initial, final)
        if 0 < final < initial and percent >= policy.threshold:
            os.replace(work, asset.path)
            result.dest_size = final
            result.percent = percent
        else:
            logger.debug(
                "%s: %d -> %d bytes (%d%%) below threshold %d%%, keeping original",
                asset.name,
                initial,
                final,
                percent,
                policy.threshold,
            )
    except OptimizeError as exc:
        return result.fail(exc)
    finally:
        work.unlink(missing_ok=True)
    return result
