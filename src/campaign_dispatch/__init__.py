# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""campaign-dispatch: outbound campaign email dispatcher.

Turns a durable queue of personalized messages into delivered mail through
SMTP or Amazon SES, within per-account hourly/daily limits, with open and
click tracking and campaign status roll-up.
"""

__version__ = "0.1.0"
