"""
Booking number allocation
"""

import itertools
import random
import re
import pytest

from tourpay.core.exceptions import ConflictError
from tourpay.services.booking_service import candidate_booking_number, generate_booking_number

BOOKING_NUMBER = re.compile(r"^BK\d{11}$")


def test_candidate_format():
    number = candidate_booking_number(clock=lambda: 1_700_000_123.5, rng=lambda n: 7)
    assert number == "BK00123500007"
    assert BOOKING_NUMBER.match(candidate_booking_number())


@pytest.mark.asyncio
async def test_retries_after_collision():
    calls = []

    async def exists(number):
        calls.append(number)
        return len(calls) < 3

    rng = iter([1, 2, 3]).__next__
    number = await generate_booking_number(exists, clock=lambda: 1_700_000_000.0, rng=lambda n: rng())
    assert number == "BK00000000003"
    assert len(calls) == 3


@pytest.mark.asyncio
async def test_gives_up_after_max_attempts():
    calls = []

    async def exists(number):
        calls.append(number)
        return True

    with pytest.raises(ConflictError):
        await generate_booking_number(exists)
    assert len(calls) == 5


@pytest.mark.asyncio
async def test_unique_over_ten_thousand_generations():
    """
    A slow clock (many draws per millisecond) forces real collisions, which
    the retry loop has to resolve.
    """
    issued = set()
    collisions = 0
    ticks = itertools.count()
    seeded = random.Random(1234)

    def clock():
        return 1_700_000_000 + (next(ticks) // 20) / 1000

    async def exists(number):
        nonlocal collisions
        if number in issued:
            collisions += 1
            return True
        return False

    for _ in range(10_000):
        number = await generate_booking_number(
            exists, max_attempts=10, clock=clock, rng=seeded.randrange
        )
        assert BOOKING_NUMBER.match(number)
        issued.add(number)

    assert len(issued) == 10_000
    assert collisions > 0
