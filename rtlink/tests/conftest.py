import pytest

from rtlink.config import LinkSettings
from rtlink.network.delays import CancelableDelay


class RecordingDelay(CancelableDelay):
    """Delay that returns immediately and records the requested seconds."""

    def __init__(self) -> None:
        self.calls: list[float] = []

        async def _sleep(seconds: float) -> None:
            self.calls.append(seconds)

        super().__init__(sleep=_sleep)


@pytest.fixture
def make_settings(tmp_path):
    def _make(**overrides) -> LinkSettings:
        values = {
            "host": "127.0.0.1",
            "port": "7350",
            "identity_credential": "s3cret-server-key",
            "use_encrypted_transport": False,
            "managed_platform": False,
            "environment": "development",
            "transport": "dummy",
            "device_id_path": tmp_path / "device_id",
        }
        values.update(overrides)
        return LinkSettings(**values)

    return _make


@pytest.fixture
def recording_delay() -> RecordingDelay:
    return RecordingDelay()
