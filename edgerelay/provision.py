"""Binary provisioning: fetch an executable from a prioritized list of sources.

A target that already exists with a non-empty size is reused without touching
the network, so supervisor restarts can call ``provision`` freely.
"""
import os
import stat
import time
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Sequence

import requests

from .errors import FatalProvisionError, ProvisionError
from .log import log

CHUNK_B = 64 * 1024


@dataclass
class ProvisionTask:
    sources: Sequence[str]
    target: Path
    attempts: int = 3
    timeout: float = 30.0
    member: Optional[str] = None  # file to pull out of .zip sources; defaults to target name

    def __post_init__(self):
        self.target = Path(self.target)
        if not self.sources:
            raise ValueError("ProvisionTask needs at least one source")
        if self.attempts < 1:
            raise ValueError("attempts must be positive")
        if self.timeout <= 0:
            raise ValueError("timeout must be positive")


class IncompleteDownload(Exception):
    pass


def _make_executable(path: Path):
    mode = path.stat().st_mode
    path.chmod(mode | stat.S_IXUSR | stat.S_IRUSR | stat.S_IXGRP | stat.S_IXOTH)


def _discard(*paths: Path):
    for p in paths:
        try:
            p.unlink()
        except FileNotFoundError:
            pass


class Provisioner:
    def __init__(self, session: Optional[requests.Session] = None,
                 backoff: float = 2.0, max_delay: float = 30.0,
                 sleep: Callable[[float], None] = time.sleep):
        self.session = session or requests.Session()
        self.backoff = backoff
        self.max_delay = max_delay
        self.sleep = sleep

    def provision(self, task: ProvisionTask) -> Path:
        target = task.target
        if target.is_dir():
            raise FatalProvisionError(f"{target} is a directory")
        if target.exists() and target.stat().st_size > 0:
            _make_executable(target)
            log(f"{target.name} already present, skipping download", "DEBUG")
            return target
        target.parent.mkdir(parents=True, exist_ok=True)

        part = target.with_name(target.name + ".part")
        archive = target.with_name(target.name + ".download")
        last_err: Optional[BaseException] = None
        tried = 0
        total = len(task.sources) * task.attempts

        for url in task.sources:
            for attempt in range(1, task.attempts + 1):
                if tried:
                    self.sleep(min(tried * self.backoff, self.max_delay))
                tried += 1
                log(f"Downloading {target.name} from {url} (attempt {attempt}/{task.attempts})", "PROCESS")
                try:
                    if url.lower().endswith(".zip"):
                        self._fetch(url, archive, task.timeout)
                        self._extract(archive, task.member or target.name, part)
                    else:
                        self._fetch(url, part, task.timeout)
                    os.replace(part, target)
                except (requests.RequestException, IncompleteDownload,
                        zipfile.BadZipFile, KeyError, OSError) as e:
                    last_err = e
                    log(f"Download of {target.name} failed ({tried}/{total}): {type(e).__name__}: {e}", "WARNING")
                    _discard(part, archive, target)
                    continue
                finally:
                    _discard(archive)
                _make_executable(target)
                log(f"{target.name} ready at {target}", "SUCCESS")
                return target

        raise ProvisionError(
            f"could not provision {target.name} from {len(task.sources)} source(s)", cause=last_err)

    def _fetch(self, url: str, dest: Path, timeout: float):
        deadline = time.monotonic() + timeout
        written = 0
        with self.session.get(url, stream=True, timeout=timeout) as resp:
            resp.raise_for_status()
            cl_raw = resp.headers.get("Content-Length")
            try:
                expected = int(cl_raw) if cl_raw is not None else None
            except ValueError:
                expected = None
            if expected == 0:
                raise IncompleteDownload(f"{url} reported an empty body")
            if resp.headers.get("Content-Encoding"):
                # iter_content yields decoded bytes; Content-Length counts encoded ones
                expected = None
            with open(dest, "wb") as f:
                for chunk in resp.iter_content(chunk_size=CHUNK_B):
                    if time.monotonic() > deadline:
                        raise IncompleteDownload(f"timed out after {timeout:.0f}s")
                    if not chunk:
                        continue
                    f.write(chunk)
                    written += len(chunk)
        if written == 0:
            raise IncompleteDownload(f"{url} returned an empty body")
        if expected is not None and written != expected:
            raise IncompleteDownload(f"expected {expected} bytes, got {written}")

    def _extract(self, archive: Path, member: str, dest: Path):
        with zipfile.ZipFile(archive) as zf:
            name = next((n for n in zf.namelist() if n == member or n.endswith("/" + member)), None)
            if name is None:
                raise KeyError(f"{member} not found in archive")
            with zf.open(name) as src, open(dest, "wb") as out:
                while True:
                    buf = src.read(CHUNK_B)
                    if not buf:
                        break
                    out.write(buf)
        if dest.stat().st_size == 0:
            raise IncompleteDownload(f"{member} in archive is empty")
