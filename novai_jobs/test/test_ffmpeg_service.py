import pytest

from novai_jobs.services.ffmpeg_service import FFmpegError, FFmpegService, escape_drawtext, hook_filter, variant_command


def test_escape_drawtext():
    assert escape_drawtext("50% off: now") == "50\\% off\\: now"
    assert "'" not in escape_drawtext("don't")


def test_hook_filter_position_and_duration():
    f = hook_filter("Wait for it", "top", 3)
    assert f.startswith("drawtext=text='Wait for it'")
    assert ":y=50" in f
    assert "enable='between(t,0,3)'" in f

    f = hook_filter("Hi", "bottom")
    assert "y=h-text_h-50" in f
    assert "enable" not in f


def test_variant_command_with_audio_and_hook():
    cmd = variant_command(
        ffmpeg_bin="ffmpeg",
        video_path="in.mp4",
        out_path="out.mp4",
        audio_path="track.mp3",
        hook_text="Wait for it",
        hook_position="center",
        hook_duration=2.5,
    )
    assert cmd[:5] == ["ffmpeg", "-y", "-i", "in.mp4", "-i"]
    assert "-vf" in cmd
    i = cmd.index("-map")
    assert cmd[i:i + 5] == ["-map", "0:v", "-map", "1:a", "-shortest"]
    assert cmd[cmd.index("-c:v") + 1] == "libx264"
    assert cmd[cmd.index("-c:a") + 1] == "aac"
    assert cmd[-1] == "out.mp4"


def test_variant_command_without_audio_or_hook_keeps_source_audio():
    cmd = variant_command(ffmpeg_bin="ffmpeg", video_path="in.mp4", out_path="out.mp4")
    assert "-map" not in cmd
    assert "-vf" not in cmd
    assert cmd.count("-i") == 1


def test_missing_binary_raises_ffmpeg_error():
    svc = FFmpegService(ffmpeg_bin="/nonexistent/ffmpeg-binary")
    with pytest.raises(FFmpegError, match="ffmpeg_not_found"):
        svc._run(["/nonexistent/ffmpeg-binary", "-version"])
