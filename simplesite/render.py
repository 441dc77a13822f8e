from __future__ import annotations

import asyncio
import os
import shutil
from pathlib import Path
from typing import Union

Content = Union[bytes, str]


def _write(path: Path, data: Content) -> None:
    if isinstance(data, str):
        path.write_text(data, encoding="utf-8")
    else:
        path.write_bytes(data)


def write_output(path: Path, data: Content) -> None:
    try:
        _write(path, data)
    except FileNotFoundError:
        # directory not found -- create directories and retry
        path.parent.mkdir(parents=True, exist_ok=True)
        _write(path, data)


async def write_file(path: Path, data: Content) -> None:
    await asyncio.to_thread(write_output, path, data)


def copy_file(src: Path, dst: Path) -> bool:
    src_mtime = src.stat().st_mtime_ns
    try:
        dst_mtime = dst.stat().st_mtime_ns
    except FileNotFoundError:
        dst_mtime = None
    if dst_mtime is not None and dst_mtime >= src_mtime:
        return False
    try:
        shutil.copy2(src, dst)
    except FileNotFoundError:
        if not src.exists():
            raise
        dst.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(src, dst)
    return True


def copy_symlink(src: Path, dst: Path) -> str:
    target = os.readlink(src)
    retry = True
    while True:
        try:
            os.symlink(target, dst)
        except FileExistsError:
            if dst.is_symlink() and os.readlink(dst) == target:
                break
            if retry:
                dst.unlink()
                retry = False
                continue
            raise
        except FileNotFoundError:
            if not retry:
                raise
            dst.parent.mkdir(parents=True, exist_ok=True)
            retry = False
            continue
        break
    return target
