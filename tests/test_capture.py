from vision.capture import CaptureSession, load_frames_from_directory


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


def test_tick_respects_interval():
    clock = FakeClock()
    session = CaptureSession(interval_sec=60, clock=clock)
    assert session.tick(b"img") is None

    session.start()
    first = session.tick(b"a")
    assert first.id == "capture_001"
    assert first.captured_at_sec == 0.0

    clock.now += 30
    assert session.tick(b"b") is None
    assert session.next_capture_in() == 30.0

    clock.now += 30
    second = session.tick(b"c")
    assert second.id == "capture_002"
    assert second.captured_at_sec == 60.0


def test_max_captures_limits_auto_frames_only():
    session = CaptureSession(max_captures=2, clock=FakeClock())
    session.start()
    assert session.capture_now(b"1") is not None
    assert session.capture_now(b"2") is not None
    assert session.capture_now(b"3") is None
    uploaded = session.upload(b"u", "image/png")
    assert uploaded.id == "upload_001"
    assert uploaded.uploaded
    assert len(session.auto_frames()) == 2
    assert session.uploaded_frames() == [uploaded]


def test_pending_and_clear():
    session = CaptureSession(clock=FakeClock())
    frame = session.add_frame(b"x", 5.0)
    assert session.pending_frames() == [frame]
    frame.description = "A slide deck"
    assert session.pending_frames() == []
    assert session.find(frame.id) is frame
    session.clear()
    assert session.frames == ()
    assert session.add_frame(b"y", 0.0).id == "capture_001"


def test_load_frames_from_directory(tmp_path):
    (tmp_path / "b.png").write_bytes(b"second")
    (tmp_path / "a.jpg").write_bytes(b"first")
    (tmp_path / "notes.txt").write_text("skip")
    (tmp_path / "uploads").mkdir()
    upload = tmp_path / "uploads" / "extra.png"
    upload.write_bytes(b"uploaded")

    session = CaptureSession(interval_sec=30)
    frames = load_frames_from_directory(session, tmp_path, [upload])

    assert [frame.image_bytes for frame in frames] == [b"first", b"second", b"uploaded"]
    assert [frame.captured_at_sec for frame in frames[:2]] == [0.0, 30.0]
    assert frames[1].mime_type == "image/png"
    assert frames[2].uploaded
