"""
Tests for data models, the coordinate transform and pipeline configuration.

Run with: pytest tests/test_models.py -v
"""

import pytest
from pydantic import ValidationError

from framemask.core.models import (
    CircleShape,
    Job,
    JobStatus,
    Mask,
    MaskType,
    OutputFormat,
    OutputSettings,
    PixelBox,
    PolygonShape,
    RectangleShape,
    ShapeSpace,
    SourceKind,
    parse_size,
)
from framemask.core.pipeline_config import (
    LOW_MEMORY_CONFIG,
    PipelineConfig,
    get_config_from_env,
    get_preset,
)
from framemask.core.transform import TransformCache, compute_matrix


def placed_mask(natural_w, natural_h, scale, offset_x, offset_y, **extra) -> Mask:
    data = {
        "type": "rectangle",
        "coordinates": {"x": 0, "y": 0, "width": 10, "height": 10},
        "imageDimensions": {"width": natural_w, "height": natural_h},
        "imageDisplayInfo": {"scale": scale, "offsetX": offset_x, "offsetY": offset_y},
    }
    data.update(extra)
    return Mask.model_validate(data)


class TestPixelBox:
    """Tests for frame-space box clamping."""

    def test_overflowing_box_is_clamped(self):
        box = PixelBox(x=90, y=90, width=20, height=20).clamp(100, 100)
        assert box == PixelBox(x=90, y=90, width=10, height=10)

    def test_box_inside_frame_unchanged(self):
        box = PixelBox(x=10, y=10, width=20, height=20)
        assert box.clamp(100, 100) == box

    def test_negative_origin_floored(self):
        box = PixelBox(x=-5, y=-10, width=20, height=20).clamp(100, 100)
        assert (box.x, box.y) == (0, 0)
        assert box.is_within(100, 100)

    @pytest.mark.parametrize(
        "box",
        [
            PixelBox(x=150, y=150, width=10, height=10),
            PixelBox(x=0, y=0, width=0, height=0),
            PixelBox(x=99, y=99, width=-3, height=500),
            PixelBox(x=-50, y=40, width=1000, height=1),
        ],
    )
    def test_clamp_invariant(self, box):
        clamped = box.clamp(100, 80)
        assert clamped.x >= 0 and clamped.y >= 0
        assert clamped.width >= 1 and clamped.height >= 1
        assert clamped.x + clamped.width <= 100
        assert clamped.y + clamped.height <= 80


class TestMaskShapeResolution:
    """Tests for resolving the dual coordinate encoding."""

    def test_legacy_rectangle_array_is_normalized(self):
        mask = Mask.model_validate({"type": "rectangle", "coordinates": [0.1, 0.2, 0.3, 0.4]})
        assert isinstance(mask.shape, RectangleShape)
        assert mask.shape.space == ShapeSpace.NORMALIZED
        assert mask.shape.width == pytest.approx(0.3)

    def test_rectangle_object_is_canvas_space(self):
        mask = Mask.model_validate(
            {"type": "rectangle", "coordinates": {"x": 10, "y": 10, "width": 20, "height": 20}}
        )
        assert mask.shape.space == ShapeSpace.CANVAS
        assert (mask.shape.x, mask.shape.y) == (10, 10)

    def test_circle_object_uses_box_center(self):
        mask = Mask.model_validate(
            {"type": "circle", "coordinates": {"x": 10, "y": 20, "width": 40, "height": 30}}
        )
        assert isinstance(mask.shape, CircleShape)
        assert (mask.shape.cx, mask.shape.cy) == (30, 35)
        assert mask.shape.radius == 15

    def test_legacy_circle_array(self):
        mask = Mask.model_validate({"type": "circle", "coordinates": [0.5, 0.5, 0.25]})
        assert mask.shape.space == ShapeSpace.NORMALIZED
        assert mask.shape.radius == 0.25

    def test_polygon_point_objects(self):
        mask = Mask.model_validate(
            {
                "type": "polygon",
                "coordinates": [{"x": 10, "y": 10}, {"x": 50, "y": 10}, {"x": 30, "y": 40}],
            }
        )
        assert isinstance(mask.shape, PolygonShape)
        assert mask.shape.space == ShapeSpace.CANVAS
        assert mask.shape.closed

    def test_flat_freeform_points_in_unit_range_are_normalized(self):
        mask = Mask.model_validate(
            {"type": "freeform", "coordinates": [0.1, 0.1, 0.5, 0.1, 0.3, 0.6], "brushSize": 4}
        )
        assert mask.shape.space == ShapeSpace.NORMALIZED
        assert mask.shape.points == [(0.1, 0.1), (0.5, 0.1), (0.3, 0.6)]
        assert not mask.shape.closed
        assert mask.brush_size == 4

    def test_unresolvable_coordinates_leave_shape_empty(self):
        mask = Mask.model_validate({"type": "rectangle", "coordinates": "garbage"})
        assert mask.shape is None

    def test_opacity_out_of_range_rejected(self):
        with pytest.raises(ValidationError):
            Mask.model_validate({"type": "rectangle", "coordinates": [0, 0, 1, 1], "opacity": 150})

    def test_opacity_level(self):
        mask = Mask(type=MaskType.RECTANGLE, coordinates=[0, 0, 1, 1], opacity=75)
        assert mask.opacity_level == 191

    def test_canvas_size_prefers_original_dimensions(self):
        mask = Mask.model_validate(
            {
                "type": "rectangle",
                "coordinates": [0, 0, 1, 1],
                "canvasWidth": 800,
                "canvasHeight": 600,
                "originalCanvasDimensions": {"width": 1600, "height": 1200},
            }
        )
        assert mask.canvas_size == (1600, 1200)


class TestOutputSettings:
    """Tests for output size and format resolution."""

    def test_defaults(self):
        settings = OutputSettings()
        assert settings.format == OutputFormat.PNG
        assert settings.jpeg_quality == 90
        assert settings.aspect_ratio_mode.value == "letterbox"

    def test_jpeg_alias(self):
        assert OutputSettings(format="JPEG").format == OutputFormat.JPG

    def test_direct_width_height_take_precedence(self):
        settings = OutputSettings.model_validate({"size": "224x224", "width": 300, "height": 200})
        assert settings.resolve_size(640, 480) == (300, 200)

    def test_original_size(self):
        assert OutputSettings(size="original").resolve_size(640, 480) == (640, 480)

    def test_preset_string(self):
        assert OutputSettings(size="416x416").resolve_size(640, 480) == (416, 416)

    def test_custom_defaults_to_512(self):
        settings = OutputSettings.model_validate({"size": "custom", "customWidth": 300})
        assert settings.resolve_size(640, 480) == (300, 512)

    def test_unknown_size_falls_back(self):
        assert OutputSettings(size="huge").resolve_size(640, 480) == (512, 512)

    def test_parse_size(self):
        assert parse_size("1024x768") == (1024, 768)
        assert parse_size("0x5") is None
        assert parse_size("original") is None


class TestJobLifecycle:
    """Tests for job status transitions."""

    def test_allowed_transitions(self):
        job = Job(id="j1", source_kind=SourceKind.VIDEO)
        assert job.can_transition_to(JobStatus.EXTRACTING)
        assert job.can_transition_to(JobStatus.READY)
        assert not job.can_transition_to(JobStatus.PROCESSING)

    def test_terminal_states(self):
        job = Job(id="j1", source_kind=SourceKind.VIDEO, status=JobStatus.COMPLETED)
        assert job.is_terminal
        assert not job.can_transition_to(JobStatus.FAILED)

    def test_any_active_state_can_fail(self):
        for status in (JobStatus.UPLOADED, JobStatus.READY, JobStatus.PROCESSING, JobStatus.EXPORTING):
            assert Job(id="j", source_kind=SourceKind.IMAGES, status=status).can_transition_to(
                JobStatus.FAILED
            )


class TestTransform:
    """Tests for the canvas-to-frame transform."""

    @pytest.mark.parametrize(
        "natural,scale,offset,frame",
        [
            ((1920, 1080), 0.5, (20, 65), (640, 360)),
            ((1000, 1000), 0.6, (100, 0), (512, 512)),
            ((300, 600), 1.25, (0, 12.5), (1200, 800)),
        ],
    )
    def test_displayed_corners_map_to_frame_corners(self, natural, scale, offset, frame):
        mask = placed_mask(natural[0], natural[1], scale, offset[0], offset[1])
        matrix = compute_matrix(mask, frame[0], frame[1])

        top_left = matrix.apply(offset[0], offset[1])
        bottom_right = matrix.apply(
            offset[0] + natural[0] * scale, offset[1] + natural[1] * scale
        )

        assert top_left == pytest.approx((0.0, 0.0), abs=1e-9)
        assert bottom_right == pytest.approx((frame[0], frame[1]), abs=1e-6)

    def test_direct_scaling_without_placement(self):
        mask = Mask.model_validate(
            {
                "type": "rectangle",
                "coordinates": {"x": 0, "y": 0, "width": 1, "height": 1},
                "canvasWidth": 400,
                "canvasHeight": 300,
            }
        )
        matrix = compute_matrix(mask, 800, 900)
        assert (matrix.scale_x, matrix.scale_y) == (2.0, 3.0)
        assert (matrix.offset_x, matrix.offset_y) == (0.0, 0.0)

    def test_no_canvas_size_is_identity(self):
        mask = Mask.model_validate(
            {"type": "rectangle", "coordinates": {"x": 1, "y": 1, "width": 1, "height": 1}}
        )
        matrix = compute_matrix(mask, 100, 100)
        assert matrix.apply(10, 20) == (10, 20)

    def test_degenerate_placement_falls_back(self):
        mask = placed_mask(0, 0, 1.0, 10, 10, canvasWidth=200, canvasHeight=100)
        matrix = compute_matrix(mask, 400, 200)
        assert (matrix.scale_x, matrix.scale_y) == (2.0, 2.0)
        assert matrix.offset_x == 0.0

    def test_cache_reuses_matrix_per_size(self):
        cache = TransformCache(placed_mask(100, 100, 1.0, 0, 0))
        first = cache.get(50, 50)
        assert cache.get(50, 50) is first
        cache.get(60, 60)
        assert len(cache) == 2


class TestPipelineConfig:
    """Tests for presets and environment overrides."""

    def test_defaults(self):
        config = PipelineConfig()
        assert config.batch_size == 12
        assert config.volume_batch_size == 8
        assert config.alpha_threshold == 128
        assert config.red_minimum == 150
        assert config.red_dominance_ratio == 1.5

    def test_get_preset_returns_copy(self):
        config = get_preset("low_memory")
        config.batch_size = 99
        assert LOW_MEMORY_CONFIG.batch_size != 99

    def test_unknown_preset_uses_default(self):
        assert get_preset("nope").batch_size == PipelineConfig().batch_size

    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("FRAMEMASK_CONFIG_MODE", "low_memory")
        monkeypatch.setenv("FRAMEMASK_VOLUME_BATCH_SIZE", "3")
        monkeypatch.setenv("FRAMEMASK_NUM_WORKERS", "100")
        monkeypatch.setenv("FRAMEMASK_USE_PROCESSES", "yes")
        config = get_config_from_env()
        assert config.volume_batch_size == 3
        assert config.num_workers == 8
        assert config.use_processes is True

    def test_invalid_env_value_ignored(self, monkeypatch):
        monkeypatch.setenv("FRAMEMASK_CONFIG_MODE", "low_memory")
        monkeypatch.setenv("FRAMEMASK_BATCH_SIZE", "abc")
        assert get_config_from_env().batch_size == LOW_MEMORY_CONFIG.batch_size
