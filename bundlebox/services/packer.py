import io
import zipfile
from typing import Iterable


def pack(members: Iterable[tuple[str, bytes]]) -> bytes:
    """Pack ``(path, content)`` pairs into an in-memory ZIP container."""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        for path, content in members:
            zf.writestr(path, content)
    return buffer.getvalue()


def unpack(container: bytes) -> dict[str, bytes]:
    """Return every file member of ``container`` keyed by path."""
    with zipfile.ZipFile(io.BytesIO(container)) as zf:
        return {
            info.filename: zf.read(info)
            for info in zf.infolist()
            if not info.is_dir()
        }


def matches_selection(path: str, selected: str) -> bool:
    selected = selected.rstrip("/")
    return path == selected or path.startswith(selected + "/")


def select(members: dict[str, bytes], paths: Iterable[str]) -> dict[str, bytes]:
    paths = [p for p in paths if p]
    return {
        path: content
        for path, content in members.items()
        if any(matches_selection(path, sel) for sel in paths)
    }
