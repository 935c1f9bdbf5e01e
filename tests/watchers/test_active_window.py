from unittest.mock import Mock, patch

import psutil
import pytest

from myfocus.watchers import active_window as aw


class TestActiveWindow:
    """前面ウィンドウ取得のテスト"""

    def test_non_windows_returns_unknown(self):
        with patch.object(aw.sys, "platform", "linux"):
            assert aw.get_active_app() == {"application_name": None, "window_title": None}

    @pytest.fixture
    def win32(self):
        """win32 API のモック"""
        win32gui = Mock()
        win32process = Mock()
        pywintypes = Mock()
        pywintypes.error = OSError
        with (
            patch.object(aw.sys, "platform", "win32"),
            patch.object(aw, "win32gui", win32gui),
            patch.object(aw, "win32process", win32process),
            patch.object(aw, "pywintypes", pywintypes),
        ):
            yield win32gui, win32process

    def test_foreground_process(self, win32):
        win32gui, win32process = win32
        win32gui.GetForegroundWindow.return_value = 42
        win32gui.GetWindowText.return_value = "main.py - VSCode"
        win32process.GetWindowThreadProcessId.return_value = (1, 1234)

        with patch("psutil.Process") as mock_process:
            mock_process.return_value.name.return_value = "Code.exe"
            result = aw.get_active_app()

        assert result == {"application_name": "Code.exe", "window_title": "main.py - VSCode"}
        mock_process.assert_called_once_with(1234)

    def test_no_foreground_window(self, win32):
        win32gui, _ = win32
        win32gui.GetForegroundWindow.return_value = 0

        assert aw.get_active_app() == {"application_name": None, "window_title": None}

    def test_win32_error(self, win32):
        win32gui, _ = win32
        win32gui.GetForegroundWindow.return_value = 42
        win32gui.GetWindowText.side_effect = OSError("access denied")

        assert aw.get_active_app() == {"application_name": None, "window_title": None}

    def test_process_gone_keeps_title(self, win32):
        win32gui, win32process = win32
        win32gui.GetForegroundWindow.return_value = 42
        win32gui.GetWindowText.return_value = "YouTube - Google Chrome"
        win32process.GetWindowThreadProcessId.return_value = (1, 99)

        with patch("psutil.Process", side_effect=psutil.NoSuchProcess(99)):
            result = aw.get_active_app()

        assert result == {"application_name": None, "window_title": "YouTube - Google Chrome"}
