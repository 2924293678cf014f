from spark.server import WS_FRAME_CEILING, uvicorn_options, ws_max_size
from spark.settings import settings


def test_transport_ceiling_leaves_room_for_the_size_error():
    options = uvicorn_options(settings)
    assert options["ws_max_size"] >= WS_FRAME_CEILING
    assert options["ws_max_size"] >= settings.max_message_size * 16
    assert options["ws_ping_interval"] == settings.ping_interval
    assert options["ws_ping_timeout"] == settings.pong_wait


def test_transport_ceiling_grows_with_a_large_message_cap():
    large = settings.model_copy(update={"max_message_size": 256 * 1024})
    assert ws_max_size(large) == 16 * 256 * 1024
