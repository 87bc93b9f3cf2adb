from __future__ import annotations

from enum import Enum


class JobType(str, Enum):
    training = "training"
    diagram_generation = "diagram-generation"
    face_swap = "face-swap"
    image_generation = "image-generation"
    variant = "variant"


class JobStatus(str, Enum):
    pending = "pending"
    queued = "queued"
    processing = "processing"
    completed = "completed"
    failed = "failed"


TERMINAL_STATUSES = (JobStatus.completed.value, JobStatus.failed.value)
ACTIVE_STATUSES = (JobStatus.pending.value, JobStatus.queued.value, JobStatus.processing.value)


class OperationStatus(str, Enum):
    queued = "queued"
    in_progress = "in_progress"
    completed = "completed"
    failed = "failed"


class FaceSwapMethod(str, Enum):
    wan_replace = "wan_replace"
    kling = "kling"
    frame_by_frame = "frame_by_frame"


class ImageGenerationMode(str, Enum):
    text_to_image = "text-to-image"
    face_swap = "face-swap"
    character_diagram_swap = "character-diagram-swap"


class HookPosition(str, Enum):
    top = "top"
    center = "center"
    bottom = "bottom"


class AspectRatio(str, Enum):
    ar_1_1 = "1:1"
    ar_16_9 = "16:9"
    ar_9_16 = "9:16"
    ar_4_5 = "4:5"
    ar_3_4 = "3:4"
