import sys
from typing import Any, TypedDict, cast

import psutil

from myfocus.logger import logger

if sys.platform == "win32":
    import pywintypes  # pyright: ignore[reportMissingImports]
    import win32gui  # pyright: ignore[reportMissingImports]
    import win32process  # pyright: ignore[reportMissingImports]
else:  # pragma: no cover
    pywintypes = cast("Any", None)
    win32gui = cast("Any", None)
    win32process = cast("Any", None)

log = logger.getChild("active_window")


class ActiveApp(TypedDict):
    application_name: str | None
    window_title: str | None


def _unknown() -> ActiveApp:
    return {"application_name": None, "window_title": None}


def get_active_app() -> ActiveApp:
    """前面ウィンドウのプロセス名とタイトルを返す（Windows 以外では常に不明）."""
    if sys.platform != "win32":
        return _unknown()

    hwnd = win32gui.GetForegroundWindow()
    if not hwnd:
        return _unknown()

    try:
        title = win32gui.GetWindowText(hwnd)
        _, pid = win32process.GetWindowThreadProcessId(hwnd)
    except pywintypes.error as e:
        log.debug("foreground window lookup failed: %s", e)
        return _unknown()

    try:
        process_name = psutil.Process(pid).name()
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return {"application_name": None, "window_title": title or None}
    return {"application_name": process_name, "window_title": title or None}
