#!/usr/bin/env python3
"""
Timelock policy tests

1. Delays → ordered checkpoints per side
2. Non-monotonic delays rejected
3. Windows per action and side
4. Cross-chain cascade check
"""

import sys
import os
import unittest

# Add package to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from xswap.core import EscrowAction, EscrowSide, Timelocks, TIMELOCK_CASCADE_MIN_GAP_SECONDS
from xswap.errors import ValidationError
from xswap.htlc.timelocks import (
    DelayConfig, build_timelocks, window_for, in_window, validate_cascade,
    validate_timelocks, rescue_eligible,
)

SRC_DELAYS = DelayConfig(finality=60, withdrawal=120, public_withdrawal=180,
                         cancellation=240, public_cancellation=300)
DST_DELAYS = DelayConfig(withdrawal=600, public_withdrawal=1200, cancellation=3600)


class TestBuild(unittest.TestCase):

    def test_source_checkpoints(self):
        tl = build_timelocks(1000, SRC_DELAYS, EscrowSide.SOURCE)
        self.assertEqual(
            (tl.deployed_at, tl.finality, tl.withdrawal, tl.public_withdrawal,
             tl.cancellation, tl.public_cancellation),
            (1000, 1060, 1120, 1180, 1240, 1300),
        )

    def test_destination_has_no_finality(self):
        tl = build_timelocks(1000, DST_DELAYS, EscrowSide.DESTINATION)
        self.assertIsNone(tl.finality)
        self.assertIsNone(tl.public_cancellation)
        self.assertEqual(tl.cancellation, 4600)

    def test_source_defaults(self):
        tl = build_timelocks(0, DST_DELAYS, EscrowSide.SOURCE)
        self.assertEqual(tl.finality, tl.withdrawal)
        self.assertEqual(tl.public_cancellation, tl.cancellation)

    def test_equal_checkpoints_allowed(self):
        delays = DelayConfig(withdrawal=60, public_withdrawal=60, cancellation=60)
        tl = build_timelocks(0, delays, EscrowSide.DESTINATION)
        self.assertEqual(tl.withdrawal, tl.cancellation)

    def test_non_monotonic_rejected(self):
        bad = [
            DelayConfig(withdrawal=600, public_withdrawal=300, cancellation=3600),
            DelayConfig(withdrawal=600, public_withdrawal=1200, cancellation=900),
            DelayConfig(withdrawal=0, public_withdrawal=1200, cancellation=3600),
            DelayConfig(withdrawal=-5, public_withdrawal=1200, cancellation=3600),
        ]
        for delays in bad:
            with self.assertRaises(ValidationError):
                build_timelocks(1000, delays, EscrowSide.DESTINATION)

    def test_source_order_rejected(self):
        with self.assertRaises(ValidationError):
            build_timelocks(0, DelayConfig(finality=200, withdrawal=120, public_withdrawal=180,
                                           cancellation=240), EscrowSide.SOURCE)
        with self.assertRaises(ValidationError):
            build_timelocks(0, DelayConfig(withdrawal=120, public_withdrawal=180,
                                           cancellation=240, public_cancellation=200),
                            EscrowSide.SOURCE)

    def test_side_shape_enforced(self):
        dst = build_timelocks(0, DST_DELAYS, EscrowSide.DESTINATION)
        with self.assertRaises(ValidationError):
            validate_timelocks(dst, EscrowSide.SOURCE)
        src = build_timelocks(0, SRC_DELAYS, EscrowSide.SOURCE)
        with self.assertRaises(ValidationError):
            validate_timelocks(src, EscrowSide.DESTINATION)


class TestWindows(unittest.TestCase):

    def setUp(self):
        self.src = build_timelocks(1000, SRC_DELAYS, EscrowSide.SOURCE)
        self.dst = build_timelocks(1000, DST_DELAYS, EscrowSide.DESTINATION)

    def test_withdraw_window(self):
        w = window_for(EscrowAction.WITHDRAW, EscrowSide.DESTINATION, self.dst)
        self.assertEqual(w, (1600, 4600))
        self.assertFalse(in_window(w, 1599))
        self.assertTrue(in_window(w, 1600))
        self.assertTrue(in_window(w, 4599))
        self.assertFalse(in_window(w, 4600))

    def test_public_withdraw_window(self):
        w = window_for(EscrowAction.PUBLIC_WITHDRAW, EscrowSide.DESTINATION, self.dst)
        self.assertEqual(w, (2200, 4600))

    def test_cancel_is_open_ended(self):
        w = window_for(EscrowAction.CANCEL, EscrowSide.SOURCE, self.src)
        self.assertEqual(w, (1240, None))
        self.assertTrue(in_window(w, 10 ** 12))

    def test_public_cancel_source_only(self):
        self.assertEqual(window_for(EscrowAction.PUBLIC_CANCEL, EscrowSide.SOURCE, self.src),
                         (1300, None))
        with self.assertRaises(ValidationError):
            window_for(EscrowAction.PUBLIC_CANCEL, EscrowSide.DESTINATION, self.dst)

    def test_rescue_eligible(self):
        self.assertFalse(rescue_eligible(self.src, 3600, 4599))
        self.assertTrue(rescue_eligible(self.src, 3600, 4600))


class TestCascade(unittest.TestCase):

    def test_valid_cascade(self):
        src = Timelocks(deployed_at=0, finality=60, withdrawal=120, public_withdrawal=600,
                        cancellation=7200, public_cancellation=7800)
        dst = Timelocks(deployed_at=10, withdrawal=70, public_withdrawal=600, cancellation=3610)
        self.assertTrue(validate_cascade(src, dst))

    def test_gap_too_small(self):
        src = Timelocks(deployed_at=0, finality=60, withdrawal=120, public_withdrawal=600,
                        cancellation=3600, public_cancellation=3600)
        dst = Timelocks(deployed_at=0, withdrawal=60, public_withdrawal=600,
                        cancellation=3600 - TIMELOCK_CASCADE_MIN_GAP_SECONDS + 1)
        with self.assertRaises(ValidationError):
            validate_cascade(src, dst)
        self.assertTrue(validate_cascade(src, dst, min_gap=0))


if __name__ == "__main__":
    unittest.main()
