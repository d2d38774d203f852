# tests/test_commands.py

import pytest

from evcam_remote.commands import (
    ExitConfirmed,
    ExitRequest,
    Help,
    Photo,
    Record,
    StartContinuous,
    Status,
    StopContinuous,
    Unrecognized,
    parse_command,
    parse_record_duration,
    strip_mentions,
)


@pytest.mark.parametrize(
    "text, expected",
    [
        ("录制", Record(60)),
        ("录制30", Record(30)),
        ("录制 45", Record(45)),
        ("录制3", Record(5)),
        ("录制9999", Record(600)),
        ("录制-10", Record(5)),
        ("录制abc", Record(60)),
        ("record", Record(60)),
        ("Record 120", Record(120)),
        ("/record 30", Record(30)),
        ("RECORDxyz", Record(60)),
        ("拍照", Photo()),
        ("PHOTO", Photo()),
        ("/photo", Photo()),
        ("状态", Status()),
        ("/status", Status()),
        ("启动录制", StartContinuous()),
        ("开始录制", StartContinuous()),
        ("start", StartContinuous()),
        ("/start_rec", StartContinuous()),
        ("结束录制", StopContinuous()),
        ("停止录制", StopContinuous()),
        ("Stop", StopContinuous()),
        ("/stop_rec", StopContinuous()),
        ("退出", ExitRequest()),
        ("exit", ExitRequest()),
        ("确认退出", ExitConfirmed()),
        ("/confirm_exit", ExitConfirmed()),
        ("帮助", Help()),
        ("/help", Help()),
        ("/start", Help()),
    ],
)
def test_parse_command(text, expected):
    assert parse_command(text) == expected


def test_mentions_are_stripped():
    """群聊中的 @机器人 提及不影响指令识别"""
    assert parse_command("@EVCamBot 拍照") == Photo()
    assert parse_command("  @bot   录制 20  ") == Record(20)
    assert parse_command("/record@EVCamBot 15") == Record(15)
    assert strip_mentions("@a @b 状态 ") == "状态"


def test_exact_match_only():
    """非录制指令必须完全匹配，前缀不算"""
    assert isinstance(parse_command("拍照吧"), Unrecognized)
    assert isinstance(parse_command("status please"), Unrecognized)


def test_unrecognized_keeps_raw_text():
    raw = "@bot 你好"
    assert parse_command(raw) == Unrecognized(raw)


@pytest.mark.parametrize(
    "command, seconds",
    [
        ("录制", 60),
        ("录制5", 5),
        ("录制600", 600),
        ("录制601", 600),
        ("录制+20", 20),
        ("录制 ３０", 60),  # 全角数字不是 ASCII 十进制
        ("录制1.5", 60),
        ("record record 10", 10),
    ],
)
def test_parse_record_duration(command, seconds):
    assert parse_record_duration(command) == seconds
