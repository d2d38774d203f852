"""
EVCam 远程控制 - 媒体上传
"""

from .pipeline import (
    MediaUploader,
    UploadPipeline,
    UploadPolicy,
    UploadProgress,
    format_summary,
)
from .uploaders import POLICIES, DingTalkUploader, FeishuUploader, TelegramUploader

__all__ = [
    "MediaUploader",
    "UploadPipeline",
    "UploadPolicy",
    "UploadProgress",
    "format_summary",
    "POLICIES",
    "TelegramUploader",
    "FeishuUploader",
    "DingTalkUploader",
]
