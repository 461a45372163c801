"""External service integrations for the Solvit platform."""

from .razorpay_client import FakeRazorpayClient, RazorpayClient, RazorpayError
from .video_client import FakeVideoSdkClient, VideoSdkClient, VideoSdkError

__all__ = [
    "RazorpayClient",
    "FakeRazorpayClient",
    "RazorpayError",
    "VideoSdkClient",
    "FakeVideoSdkClient",
    "VideoSdkError",
]
