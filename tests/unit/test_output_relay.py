"""Tests for output routing and bounded buffering."""

from session_bridge.output_relay import Attached, Buffering, OutputRelay


class TestBuffering:
    def test_unattached_output_is_buffered_in_order(self):
        relay = OutputRelay()
        for chunk in ["a", "b", "c"]:
            relay.on_output("s1", chunk)
        assert isinstance(relay.state("s1"), Buffering)
        assert relay.buffered_chunks("s1") == ["a", "b", "c"]

    def test_queue_never_exceeds_cap_and_drops_oldest(self):
        relay = OutputRelay(max_chunks_per_session=3)
        for i in range(10):
            relay.on_output("s1", str(i))
            assert len(relay.buffered_chunks("s1")) <= 3
        assert relay.buffered_chunks("s1") == ["7", "8", "9"]

    def test_oldest_session_evicted_at_session_cap(self):
        relay = OutputRelay(max_buffered_sessions=2)
        relay.on_output("s1", "one")
        relay.on_output("s2", "two")
        relay.on_output("s1", "more")
        relay.on_output("s3", "three")
        assert relay.buffered_chunks("s1") == []
        assert relay.buffered_chunks("s2") == ["two"]
        assert relay.buffered_chunks("s3") == ["three"]
        assert relay.buffered_session_count == 2

    def test_unknown_session_state_is_empty_buffer(self):
        relay = OutputRelay()
        state = relay.state("nope")
        assert isinstance(state, Buffering)
        assert list(state.chunks) == []

    def test_from_config(self):
        relay = OutputRelay.from_config({"relay": {"max_buffered_sessions": 4, "max_chunks_per_session": 9}})
        assert relay.max_buffered_sessions == 4
        assert relay.max_chunks_per_session == 9


class TestAttach:
    def test_attach_drains_buffer_in_order_then_live(self, make_surface):
        relay = OutputRelay()
        relay.on_output("s1", "a")
        relay.on_output("s1", "b")
        surface = make_surface()
        relay.on_attach("s1", surface)
        assert surface.received == ["a", "b"]
        assert relay.buffered_chunks("s1") == []
        assert relay.buffered_session_count == 0

        relay.on_output("s1", "c")
        assert surface.received == ["a", "b", "c"]
        assert isinstance(relay.state("s1"), Attached)

    def test_not_ready_surface_holds_backlog_until_ready(self, make_surface):
        relay = OutputRelay()
        relay.on_output("s1", "early")
        surface = make_surface(ready=False)
        relay.on_attach("s1", surface)
        relay.on_output("s1", "during-init")
        assert surface.received == []
        assert relay.buffered_chunks("s1") == ["early", "during-init"]

        surface.ready = True
        relay.notify_ready("s1")
        assert surface.received == ["early", "during-init"]

    def test_backlog_flushed_before_next_live_chunk(self, make_surface):
        relay = OutputRelay()
        surface = make_surface(ready=False)
        relay.on_attach("s1", surface)
        relay.on_output("s1", "1")
        surface.ready = True
        relay.on_output("s1", "2")
        assert surface.received == ["1", "2"]

    def test_detach_reverts_to_buffering(self, make_surface):
        relay = OutputRelay()
        surface = make_surface()
        relay.on_attach("s1", surface)
        relay.on_detach("s1")
        relay.on_output("s1", "later")
        assert surface.received == []
        assert relay.buffered_chunks("s1") == ["later"]

    def test_attached_sessions_do_not_count_toward_cap(self, make_surface):
        relay = OutputRelay(max_buffered_sessions=1)
        relay.on_attach("s1", make_surface())
        relay.on_output("s2", "x")
        relay.on_output("s1", "y")
        assert relay.buffered_chunks("s2") == ["x"]


class TestClosing:
    def test_closing_session_output_dropped(self):
        relay = OutputRelay()
        relay.on_output("s1", "a")
        relay.begin_close("s1")
        relay.on_output("s1", "b")
        assert relay.buffered_chunks("s1") == []
        assert relay.buffered_session_count == 0
        assert relay.is_closing("s1")

        relay.end_close("s1")
        assert not relay.is_closing("s1")
