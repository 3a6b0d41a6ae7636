# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Channel senders."""

from .base import ChannelServices, SendChannel
from .email import EmailChannel, create_mail_data, derive_reply_to, merge_overrides

__all__ = [
    "ChannelServices",
    "EmailChannel",
    "SendChannel",
    "create_mail_data",
    "derive_reply_to",
    "merge_overrides",
]
