# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Asynchronous notification delivery pipeline.

A trigger job taken from the workflow topic is turned into one delivery
attempt: integration selection, template compilation, a persisted message
record, provider dispatch and an ordered audit trail of every decision.
Email is the implemented channel.
"""

__version__ = "0.1.0"
