"""Tests for job models, wire format and routing tables."""

import json

import pytest
from pydantic import ValidationError

from filejobs.errors import MalformedMessage
from filejobs.jobs.models import (
    CONTENT_TYPE_FOR,
    DOCUMENT_QUEUE,
    EXTENSION_FOR,
    IMAGE_QUEUE,
    QUEUE_FOR,
    JobRecord,
    JobStatus,
    JobType,
    ProcessingMessage,
    dead_letter_names,
    ensure_exhaustive,
    get_bool,
    get_float,
    get_int,
    get_str,
    queue_arguments,
    result_location_for,
)


class TestRoutingTables:
    """Every job type has a queue, an extension and a content type."""

    @pytest.mark.parametrize("table", [QUEUE_FOR, EXTENSION_FOR, CONTENT_TYPE_FOR])
    def test_tables_cover_every_job_type(self, table):
        assert set(table) == set(JobType)

    def test_queue_routing(self):
        assert QUEUE_FOR[JobType.CONVERT_TO_PDF] == DOCUMENT_QUEUE == "document_processing"
        for job_type in (
            JobType.RESIZE_IMAGE,
            JobType.ADD_WATERMARK,
            JobType.CONVERT_TO_JPG,
            JobType.CONVERT_TO_PNG,
        ):
            assert QUEUE_FOR[job_type] == IMAGE_QUEUE == "image_processing"

    def test_ensure_exhaustive_raises_on_gap(self):
        partial = {JobType.RESIZE_IMAGE: "x"}

        with pytest.raises(RuntimeError, match="ConvertToPDF"):
            ensure_exhaustive(partial, "partial")

    def test_dead_letter_names(self):
        names = dead_letter_names("image_processing")

        assert names == {
            "exchange": "image_processing_dlx",
            "queue": "image_processing_dlq",
            "routing_key": "image_processing_dlq",
        }
        assert queue_arguments("image_processing") == {
            "x-dead-letter-exchange": "image_processing_dlx",
            "x-dead-letter-routing-key": "image_processing_dlq",
        }

    def test_result_location_is_deterministic(self):
        assert result_location_for("abc", JobType.CONVERT_TO_PDF) == "results/abc.pdf"
        assert result_location_for("abc", JobType.CONVERT_TO_PNG) == "results/abc.png"
        assert result_location_for("abc", JobType.RESIZE_IMAGE) == "results/abc.jpg"


class TestProcessingMessage:
    """Wire format of the message published per job."""

    def test_serializes_with_wire_names(self):
        message = ProcessingMessage(
            job_id="j1",
            input_location="uploads/j1_a.png",
            job_type=JobType.RESIZE_IMAGE,
            parameters={"Width": 100, "Height": 50},
        )

        payload = json.loads(message.to_bytes())

        assert payload == {
            "JobId": "j1",
            "FilePath": "uploads/j1_a.png",
            "JobType": "ResizeImage",
            "Parameters": {"Width": 100, "Height": 50},
        }

    def test_parses_wire_names(self):
        body = json.dumps({
            "JobId": "j2",
            "FilePath": "uploads/j2_b.png",
            "JobType": "AddWatermark",
            "Parameters": {"WatermarkText": "hi"},
        }).encode()

        message = ProcessingMessage.from_bytes(body)

        assert message.job_id == "j2"
        assert message.job_type == JobType.ADD_WATERMARK
        assert message.parameters == {"WatermarkText": "hi"}

    def test_from_record(self):
        record = JobRecord(
            job_id="j3",
            original_file_name="c.png",
            input_location="uploads/j3_c.png",
            job_type=JobType.CONVERT_TO_PNG,
        )

        message = ProcessingMessage.from_record(record)

        assert message.job_id == "j3"
        assert message.input_location == "uploads/j3_c.png"
        assert message.parameters == {}

    @pytest.mark.parametrize(
        "body",
        [
            b"not json",
            b"[]",
            b'{"JobId": "j", "FilePath": "f"}',
            b'{"JobId": "j", "FilePath": "f", "JobType": "Explode"}',
            b'{"JobId": "", "FilePath": "f", "JobType": "ResizeImage"}',
            b'{"JobId": "j", "FilePath": "f", "JobType": "ResizeImage", "Parameters": {"Width": [1]}}',
        ],
    )
    def test_rejects_malformed_bodies(self, body):
        with pytest.raises(MalformedMessage) as exc_info:
            ProcessingMessage.from_bytes(body)

        assert str(exc_info.value).startswith("Malformed message")
        assert isinstance(exc_info.value.__cause__, ValidationError)

    def test_parameters_keep_their_json_types(self):
        body = (
            b'{"JobId": "j", "FilePath": "f", "JobType": "ResizeImage",'
            b' "Parameters": {"Width": "800", "Flag": true, "Ratio": 1.5}}'
        )

        message = ProcessingMessage.from_bytes(body)

        assert message.parameters["Width"] == "800"
        assert message.parameters["Flag"] is True
        assert message.parameters["Ratio"] == 1.5


class TestParameterAccessors:
    """Typed extraction with explicit defaults."""

    def test_get_int(self):
        params = {"Width": 640, "Height": "480", "Flag": True}

        assert get_int(params, "Width", 800) == 640
        assert get_int(params, "Height", 600) == 600
        assert get_int(params, "Flag", 1) == 1
        assert get_int(params, "Missing", 7) == 7

    def test_get_float(self):
        assert get_float({"Ratio": 2}, "Ratio", 1.0) == 2.0
        assert get_float({"Ratio": "2"}, "Ratio", 1.0) == 1.0

    def test_get_str_and_bool(self):
        params = {"Text": "hello", "Flag": False, "Number": 3}

        assert get_str(params, "Text", "x") == "hello"
        assert get_str(params, "Number", "x") == "x"
        assert get_bool(params, "Flag", True) is False
        assert get_bool(params, "Number", True) is True


class TestJobRecord:
    def test_defaults(self):
        record = JobRecord(
            job_id="j",
            original_file_name="a.png",
            input_location="uploads/j_a.png",
            job_type=JobType.CONVERT_TO_JPG,
        )

        assert record.status == JobStatus.PENDING
        assert record.completed_at is None
        assert record.created_at.tzinfo is not None
        assert record.is_download_ready is False

    def test_frozen(self):
        record = JobRecord(
            job_id="j",
            original_file_name="a.png",
            input_location="uploads/j_a.png",
            job_type=JobType.CONVERT_TO_JPG,
        )

        with pytest.raises(ValidationError):
            record.status = JobStatus.FAILED

    def test_terminal_statuses(self):
        assert JobStatus.COMPLETED.is_terminal
        assert JobStatus.FAILED.is_terminal
        assert not JobStatus.PENDING.is_terminal
        assert not JobStatus.PROCESSING.is_terminal
