import unittest

from skypointer.motion import (
    DirectionNS,
    DirectionWE,
    MotionCommand,
    MotionController,
    MOTOR_SPEEDS,
    SlewRate,
    TrackState,
)


class FakeDevice:
    """Records the motor commands issued by the controller."""

    def __init__(self):
        self.calls = []

    async def stop(self):
        self.calls.append(("stop",))
        return True

    async def move(self, az_steps, alt_steps, speed=None):
        self.calls.append(("move", az_steps, alt_steps, speed))
        return True


class TestSlewConvergence(unittest.TestCase):
    """
    Verification of the simulated slew integration.

    The reported position moves at 1 deg/s on both axes; RA is in hours, so
    its per-tick budget is 1/15 h.
    """

    def setUp(self):
        self.motion = MotionController()
        self.assertEqual((self.motion.current_ra, self.motion.current_dec), (0.0, 90.0))
        self.assertEqual(self.motion.track_state, TrackState.IDLE)

    def test_convergence(self):
        """
        Description:
            Slews from (0 h, 90 deg) to (1 h, 80 deg) with 1 second ticks.

        Methodology:
            1. Arms the slew and records the start time with a first tick.
            2. Ticks once per simulated second, recording the distance to target.

        Expected Results:
            - The distance shrinks monotonically on both axes.
            - DEC locks after 10 ticks.
            - TRACKING is reached after 15 ticks (RA budget of 1/15 h per tick).
            - The final position equals the target exactly.
        """
        m = self.motion
        m.goto(1.0, 80.0)
        self.assertEqual(m.track_state, TrackState.SLEWING)
        m.tick(now=100.0)

        prev_dra = abs(m.target_ra - m.current_ra)
        prev_ddec = abs(m.target_dec - m.current_dec)
        ticks = 0
        while m.track_state == TrackState.SLEWING and ticks < 30:
            ticks += 1
            m.tick(now=100.0 + ticks)
            dra = abs(m.target_ra - m.current_ra)
            ddec = abs(m.target_dec - m.current_dec)
            self.assertLessEqual(dra, prev_dra)
            self.assertLessEqual(ddec, prev_ddec)
            prev_dra, prev_ddec = dra, ddec
            if ticks == 10:
                self.assertEqual(m.current_dec, 80.0)

        self.assertEqual(m.track_state, TrackState.TRACKING)
        self.assertIn(ticks, (15, 16))
        self.assertEqual((m.current_ra, m.current_dec), (1.0, 80.0))

    def test_negative_direction(self):
        m = self.motion
        m.current_ra, m.current_dec = 2.0, 10.0
        m.goto(1.9, 9.5)
        m.advance(1.0)
        self.assertAlmostEqual(m.current_ra, 2.0 - 1.0 / 15.0)
        self.assertEqual(m.current_dec, 9.5)
        self.assertEqual(m.track_state, TrackState.SLEWING)
        m.advance(1.0)
        self.assertEqual(m.track_state, TrackState.TRACKING)
        self.assertEqual(m.current_ra, 1.9)

    def test_irregular_ticks(self):
        m = self.motion
        m.goto(0.0, 85.0)
        m.tick(now=10.0)
        m.tick(now=12.5)
        self.assertEqual(m.current_dec, 87.5)
        m.tick(now=12.75)
        self.assertEqual(m.current_dec, 87.25)

    def test_first_tick_is_degenerate(self):
        """
        Description:
            The first tick (and any tick with dt = 0) changes nothing.

        Expected Results:
            - Position and state are unchanged, even when the target is reached
              by the current position.
        """
        m = self.motion
        m.goto(1.0, 80.0)
        m.tick(now=50.0)
        self.assertEqual((m.current_ra, m.current_dec), (0.0, 90.0))
        self.assertEqual(m.track_state, TrackState.SLEWING)

        m.tick(now=50.0)
        self.assertEqual((m.current_ra, m.current_dec), (0.0, 90.0))

        m.goto(0.0, 90.0)
        m.advance(0.0)
        self.assertEqual(m.track_state, TrackState.SLEWING)

    def test_no_transition_outside_slewing(self):
        m = self.motion
        m.target_ra = 5.0
        m.advance(1.0)
        self.assertEqual(m.track_state, TrackState.IDLE)
        self.assertEqual(m.current_ra, 0.0)

    def test_goto_overrides_target(self):
        m = self.motion
        m.goto(1.0, 80.0)
        m.advance(1.0)
        m.goto(-1.0, 85.0)
        self.assertEqual((m.target_ra, m.target_dec), (-1.0, 85.0))
        self.assertEqual(m.track_state, TrackState.SLEWING)
        m.advance(1.0)
        self.assertAlmostEqual(m.current_ra, 0.0)

    def test_sync_rearms_slew(self):
        m = self.motion
        m.goto(0.0, 90.0)
        m.advance(1.0)
        self.assertEqual(m.track_state, TrackState.TRACKING)
        m.sync(0.0, 89.5)
        self.assertEqual(m.track_state, TrackState.SLEWING)
        m.advance(1.0)
        self.assertEqual(m.current_dec, 89.5)
        self.assertEqual(m.track_state, TrackState.TRACKING)


class TestManualMotion(unittest.IsolatedAsyncioTestCase):
    """
    Manual jogging and abort against a recording device.
    """

    def setUp(self):
        self.device = FakeDevice()
        self.motion = MotionController(device=self.device)

    async def test_move_ns(self):
        """
        Description:
            NS jogs move the altitude axis by a quarter revolution.

        Expected Results:
            - North is positive, South negative, speed from the rate table.
            - Stop issues the device stop command.
        """
        self.assertTrue(await self.motion.move_ns(DirectionNS.NORTH, MotionCommand.START))
        self.assertTrue(await self.motion.move_ns(DirectionNS.SOUTH, MotionCommand.START))
        self.assertTrue(await self.motion.move_ns(DirectionNS.SOUTH, MotionCommand.STOP))
        max_speed = MOTOR_SPEEDS[SlewRate.MAX]
        self.assertEqual(
            self.device.calls,
            [("move", 0, 800, max_speed), ("move", 0, -800, max_speed), ("stop",)],
        )

    async def test_move_we(self):
        self.motion.slew_rate = SlewRate.FIND
        await self.motion.move_we(DirectionWE.EAST, MotionCommand.START)
        await self.motion.move_we(DirectionWE.WEST, MotionCommand.START)
        speed = MOTOR_SPEEDS[SlewRate.FIND]
        self.assertEqual(
            self.device.calls,
            [("move", 3200, 0, speed), ("move", -3200, 0, speed)],
        )

    async def test_guide_rate_halves_steps(self):
        self.motion.slew_rate = SlewRate.GUIDE
        await self.motion.move_ns(DirectionNS.NORTH, MotionCommand.START)
        await self.motion.move_we(DirectionWE.WEST, MotionCommand.START)
        speed = MOTOR_SPEEDS[SlewRate.GUIDE]
        self.assertEqual(
            self.device.calls,
            [("move", 0, 400, speed), ("move", -1600, 0, speed)],
        )

    async def test_rate_table(self):
        speeds = [MOTOR_SPEEDS[r] for r in SlewRate]
        self.assertEqual(speeds, sorted(speeds))
        self.assertEqual(len(set(speeds)), 4)

    async def test_manual_motion_leaves_slew_alone(self):
        self.motion.goto(1.0, 80.0)
        await self.motion.move_we(DirectionWE.EAST, MotionCommand.START)
        self.assertEqual(self.motion.track_state, TrackState.SLEWING)
        self.assertEqual(self.motion.target_ra, 1.0)

    async def test_abort_does_not_cancel_slew(self):
        """
        Description:
            Abort stops the motors but the simulated slew carries on.

        Methodology:
            1. Starts a slew and advances it by one second.
            2. Aborts.
            3. Ticks again.

        Expected Results:
            - The device received the stop command.
            - State is still SLEWING with the old target.
            - The next tick moves the position further towards that target.
        """
        m = self.motion
        m.goto(1.0, 80.0)
        m.tick(now=0.0)
        m.tick(now=1.0)
        before = (m.current_ra, m.current_dec)

        self.assertTrue(await m.abort())
        self.assertEqual(self.device.calls, [("stop",)])
        self.assertEqual(m.track_state, TrackState.SLEWING)
        self.assertEqual((m.target_ra, m.target_dec), (1.0, 80.0))
        self.assertEqual((m.current_ra, m.current_dec), before)

        m.tick(now=2.0)
        self.assertGreater(m.current_ra, before[0])
        self.assertLess(m.current_dec, before[1])

    async def test_without_device(self):
        m = MotionController()
        self.assertFalse(await m.abort())
        self.assertFalse(await m.move_ns(DirectionNS.NORTH, MotionCommand.START))
        self.assertFalse(await m.move_we(DirectionWE.EAST, MotionCommand.STOP))


if __name__ == "__main__":
    unittest.main()
