"""Tests for timeline request parsing."""

import pydantic
import pytest

from timeline_renderer.schemas.timeline import MediaSource, Timeline, parse_render_request


class TestMediaSource:
    def test_plain_url_string(self):
        source = MediaSource.model_validate("https://cdn.example.com/a.mp4")

        assert source.url == "https://cdn.example.com/a.mp4"
        assert source.key == "url:https://cdn.example.com/a.mp4"

    def test_plain_upload_string(self):
        source = MediaSource.model_validate("3f2a.mp4")

        assert source.upload_id == "3f2a.mp4"
        assert source.key == "upload:3f2a.mp4"

    def test_needs_exactly_one(self):
        with pytest.raises(pydantic.ValidationError):
            MediaSource.model_validate({"url": "https://x.com/a.mp4", "uploadId": "b"})
        with pytest.raises(pydantic.ValidationError):
            MediaSource.model_validate({})


class TestTimeline:
    def test_camel_case_fields(self):
        tl = Timeline.model_validate({
            "clips": [{
                "source": "https://x.com/a.mp4",
                "mediaType": "video",
                "audioVolume": 0.5,
                "visualFilters": [{"type": "blur", "value": 4}],
            }],
        })

        clip = tl.clips[0]
        assert clip.audio_volume == 0.5
        assert clip.visual_filters[0].type == "blur"

    def test_sources_deduplicated_in_order(self):
        tl = Timeline.model_validate({
            "clips": [
                {"source": "https://x.com/a.mp4", "overlays": [{"type": "image", "source": "https://x.com/logo.png"}]},
                {"source": "https://x.com/a.mp4"},
                {"source": "https://x.com/b.mp4"},
            ],
            "soundtrack": [{"source": "https://x.com/m.mp3", "mediaType": "audio"}],
        })

        assert [s.key for s in tl.sources()] == [
            "url:https://x.com/a.mp4",
            "url:https://x.com/logo.png",
            "url:https://x.com/b.mp4",
            "url:https://x.com/m.mp3",
        ]

    def test_unknown_filter_rejected(self):
        with pytest.raises(pydantic.ValidationError):
            Timeline.model_validate({"clips": [{"source": "a", "visualFilters": [{"type": "sepia"}]}]})

    def test_soundtrack_must_be_audio(self):
        with pytest.raises(pydantic.ValidationError):
            Timeline.model_validate({"clips": [{"source": "a"}], "soundtrack": [{"source": "b"}]})

    def test_text_overlay_needs_text(self):
        with pytest.raises(pydantic.ValidationError):
            Timeline.model_validate({"clips": [{"source": "a", "overlays": [{"type": "text"}]}]})


class TestLegacyRequest:
    def test_videos_muted_when_audio_given(self):
        tl = parse_render_request({
            "videoMedia": [{"url": "https://x.com/a.mp4"}, {"url": "https://x.com/b.mp4"}],
            "audioMedia": [{"url": "https://x.com/m.mp3"}],
        })

        assert [c.audio_volume for c in tl.clips] == [0.0, 0.0]
        assert [c.source.url for c in tl.soundtrack] == ["https://x.com/m.mp3"]

    def test_videos_keep_audio_without_audio_media(self):
        tl = parse_render_request({"videoMedia": [{"url": "https://x.com/a.mp4"}]})

        assert tl.clips[0].audio_volume == 1.0
        assert tl.soundtrack == []
