"""Tests for the device command dispatcher and the Redis command channel."""

import asyncio
import json
from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from renta_engine.common.exceptions import DeviceUnreachableError
from renta_engine.devices.channel import (
    CommandAction,
    DeviceCommand,
    RedisCommandChannel,
    parse_telemetry,
)
from renta_engine.devices.dispatcher import DeviceCommandDispatcher


@pytest.fixture
async def dispatcher(fake_channel):
    d = DeviceCommandDispatcher(fake_channel, safety_ceiling_minutes=30)
    yield d
    await d.close()


class TestClamp:
    def test_clamped_to_ceiling(self, dispatcher):
        assert dispatcher.clamp_duration_ms(45) == 1_800_000

    def test_within_ceiling(self, dispatcher):
        assert dispatcher.clamp_duration_ms(10) == 600_000

    def test_negative_is_zero(self, dispatcher):
        assert dispatcher.clamp_duration_ms(-1) == 0


class TestCommands:
    async def test_activation_publishes_clamped_duration(self, dispatcher, fake_channel):
        command = dispatcher.request_activation("m-1", 45)
        await dispatcher.drain()

        assert command.duration_ms == 1_800_000
        assert fake_channel.commands == [command]
        assert dispatcher.has_safety_timer("m-1")

    async def test_deactivation_disarms_timer(self, dispatcher, fake_channel):
        dispatcher.request_activation("m-1", 10)
        dispatcher.request_deactivation("m-1")
        await dispatcher.drain()

        assert fake_channel.actions("m-1") == ["activate", "deactivate"]
        assert not dispatcher.has_safety_timer("m-1")

    async def test_commands_leave_in_issue_order(self, dispatcher, fake_channel):
        for _ in range(3):
            dispatcher.request_activation("m-1", 5)
            dispatcher.request_deactivation("m-1")
        await dispatcher.drain()
        assert fake_channel.actions("m-1") == ["activate", "deactivate"] * 3

    async def test_emergency_stop_publishes_now(self, dispatcher, fake_channel):
        dispatcher.request_activation("m-1", 10)
        published = await dispatcher.emergency_stop("m-1")
        await dispatcher.drain()

        assert published is True
        assert "emergency_stop" in fake_channel.actions("m-1")
        assert not dispatcher.has_safety_timer("m-1")

    async def test_publish_failure_is_logged_not_raised(self, dispatcher, fake_channel, renta_log):
        fake_channel.fail = True
        dispatcher.request_activation("m-1", 10)
        await dispatcher.drain()

        assert fake_channel.commands == []
        assert "not delivered" in renta_log.text
        assert await dispatcher.emergency_stop("m-1") is False

    async def test_undelivered_tracks_last_failed_command(self, dispatcher, fake_channel):
        fake_channel.fail = True
        dispatcher.request_activation("m-1", 10)
        dispatcher.request_deactivation("m-1")
        await dispatcher.drain()

        assert dispatcher.undelivered()["m-1"].action.value == "deactivate"

        fake_channel.fail = False
        dispatcher.request_deactivation("m-1")
        await dispatcher.drain()
        assert dispatcher.undelivered() == {}


class TestSafetyTimer:
    async def test_timer_deactivates_after_ceiling(self, fake_channel):
        # 0.001 min = 60 ms
        dispatcher = DeviceCommandDispatcher(fake_channel, safety_ceiling_minutes=0.001)
        dispatcher.request_activation("m-1", 10)
        await asyncio.sleep(0.2)
        await dispatcher.drain()

        assert fake_channel.actions("m-1") == ["activate", "deactivate"]
        assert not dispatcher.has_safety_timer("m-1")
        await dispatcher.close()

    async def test_close_cancels_timers(self, fake_channel):
        dispatcher = DeviceCommandDispatcher(fake_channel, safety_ceiling_minutes=0.001)
        dispatcher.request_activation("m-1", 10)
        await dispatcher.close()
        await asyncio.sleep(0.1)

        assert fake_channel.actions("m-1") == ["activate"]


class TestRedisChannel:
    async def test_publish_to_machine_topic(self):
        redis = AsyncMock()
        redis.publish.return_value = 1
        channel = RedisCommandChannel(redis, prefix="machines")

        command = DeviceCommand("m-1", CommandAction.ACTIVATE, 600_000)
        assert await channel.publish(command) == 1

        topic, payload = redis.publish.call_args.args
        assert topic == "machines/m-1/commands"
        message = json.loads(payload)
        assert message["machineId"] == "m-1"
        assert message["action"] == "activate"
        assert message["durationMs"] == 600_000
        assert "issuedAt" in message

    async def test_no_subscriber_warns(self, renta_log):
        redis = AsyncMock()
        redis.publish.return_value = 0
        channel = RedisCommandChannel(redis)

        await channel.publish(DeviceCommand("m-1", CommandAction.DEACTIVATE))
        assert "No controller subscribed" in renta_log.text

    async def test_redis_error_is_device_unreachable(self):
        redis = AsyncMock()
        redis.publish.side_effect = RedisConnectionError("down")
        channel = RedisCommandChannel(redis)

        with pytest.raises(DeviceUnreachableError):
            await channel.publish(DeviceCommand("m-1", CommandAction.ACTIVATE, 1000))

    def test_telemetry_pattern(self):
        channel = RedisCommandChannel(AsyncMock(), prefix="fleet/")
        assert channel.telemetry_pattern == "fleet/*/telemetry"
        assert channel.command_topic("m-9") == "fleet/m-9/commands"


class TestParseTelemetry:
    def test_valid_frame(self):
        reading = parse_telemetry('{"machineId": "m-1", "state": "ON", "timestamp": "t"}')
        assert reading.machine_id == "m-1"
        assert reading.is_running

    def test_off_state(self):
        assert not parse_telemetry('{"machineId": "m-1", "state": "off"}').is_running

    @pytest.mark.parametrize("raw", ["not json", "[1, 2]", '{"state": "on"}', '{"machineId": "m"}', None])
    def test_malformed(self, raw):
        assert parse_telemetry(raw) is None
