"""
Tests for the upload assembler.
"""

import io
import os

import pytest

from clipstitch.services.upload_assembler import (
    ChunkStatus,
    IncompleteUploadError,
    UploadAssembler,
    UploadError,
    UploadTooLargeError,
    safe_file_name,
)


class TestChunkedUpload:
    """Tests for chunk sessions."""

    @pytest.mark.asyncio
    async def test_out_of_order_chunks_reassemble(self, assembler):
        assembler.begin_chunk_session("f-1", 3, "clip.mp4")
        await assembler.accept_chunk("f-1", 2, b"CC")
        await assembler.accept_chunk("f-1", 0, b"AA")
        await assembler.accept_chunk("f-1", 1, b"BB")

        uploaded = await assembler.finalize("f-1")

        assert uploaded.size == 6
        assert uploaded.original_name == "clip.mp4"
        with open(uploaded.path, "rb") as f:
            assert f.read() == b"AABBCC"
        assert assembler.get_session("f-1") is None

    @pytest.mark.asyncio
    async def test_duplicate_chunk_overwrites(self, assembler):
        assembler.begin_chunk_session("f-1", 2, "clip.mp4")
        assert await assembler.accept_chunk("f-1", 0, b"old") == ChunkStatus.ACCEPTED
        assert await assembler.accept_chunk("f-1", 0, b"new") == ChunkStatus.DUPLICATE
        await assembler.accept_chunk("f-1", 1, b"!")

        uploaded = await assembler.finalize("f-1")
        with open(uploaded.path, "rb") as f:
            assert f.read() == b"new!"

    @pytest.mark.asyncio
    async def test_finalize_reports_missing_chunks(self, assembler):
        assembler.begin_chunk_session("f-1", 4, "clip.mp4")
        await assembler.accept_chunk("f-1", 0, b"a")
        await assembler.accept_chunk("f-1", 2, b"c")

        with pytest.raises(IncompleteUploadError) as exc:
            await assembler.finalize("f-1")

        assert exc.value.missing == [1, 3]
        # Session survives so the client can resend
        assert assembler.get_session("f-1") is not None

    @pytest.mark.asyncio
    async def test_chunk_index_out_of_range(self, assembler):
        assembler.begin_chunk_session("f-1", 2, "clip.mp4")
        with pytest.raises(UploadError):
            await assembler.accept_chunk("f-1", 2, b"x")
        with pytest.raises(UploadError):
            await assembler.accept_chunk("f-1", -1, b"x")

    @pytest.mark.asyncio
    async def test_unknown_session(self, assembler):
        with pytest.raises(UploadError):
            await assembler.accept_chunk("nope", 0, b"x")
        with pytest.raises(UploadError):
            await assembler.finalize("nope")

    def test_begin_is_idempotent(self, assembler):
        first = assembler.begin_chunk_session("f-1", 2, "clip.mp4")
        assert assembler.begin_chunk_session("f-1", 2, "clip.mp4") is first

    def test_conflicting_chunk_count(self, assembler):
        assembler.begin_chunk_session("f-1", 2, "clip.mp4")
        with pytest.raises(UploadError):
            assembler.begin_chunk_session("f-1", 5, "clip.mp4")

    def test_conflicting_file_name(self, assembler):
        assembler.begin_chunk_session("f-1", 2, "clip.mp4")
        with pytest.raises(UploadError):
            assembler.begin_chunk_session("f-1", 2, "other.mp4")

    def test_conflicting_total_size(self, assembler):
        assembler.begin_chunk_session("f-1", 2, "clip.mp4", total_size=10)
        with pytest.raises(UploadError):
            assembler.begin_chunk_session("f-1", 2, "clip.mp4", total_size=12)
        # Omitting the size on a later chunk is not a conflict
        assert assembler.begin_chunk_session("f-1", 2, "clip.mp4").total_size == 10

    def test_invalid_file_id(self, assembler):
        with pytest.raises(UploadError):
            assembler.begin_chunk_session("../etc", 1, "clip.mp4")

    def test_declared_size_over_limit_rejected_before_write(self, settings):
        small = UploadAssembler(settings.model_copy(update={"max_chunked_upload_bytes": 10}))
        with pytest.raises(UploadTooLargeError):
            small.begin_chunk_session("f-1", 1, "clip.mp4", total_size=11)
        assert small.get_session("f-1") is None
        assert os.listdir(settings.chunk_directory) == []

    @pytest.mark.asyncio
    async def test_received_bytes_over_limit_drop_session(self, settings):
        small = UploadAssembler(settings.model_copy(update={"max_chunked_upload_bytes": 10}))
        small.begin_chunk_session("f-1", 2, "clip.mp4")
        await small.accept_chunk("f-1", 0, b"x" * 6)
        with pytest.raises(UploadTooLargeError):
            await small.accept_chunk("f-1", 1, b"x" * 6)
        assert small.get_session("f-1") is None

    @pytest.mark.asyncio
    async def test_expire_sessions(self, assembler):
        session = assembler.begin_chunk_session("f-1", 2, "clip.mp4")
        await assembler.accept_chunk("f-1", 0, b"a")
        session.last_activity -= 100

        assert assembler.expire_sessions(max_idle_seconds=10) == 1
        assert assembler.get_session("f-1") is None
        assert not os.path.exists(session.assembly_dir)

    @pytest.mark.asyncio
    async def test_failed_assembly_leaves_no_partial_file(self, assembler, settings):
        session = assembler.begin_chunk_session("f-1", 2, "clip.mp4")
        await assembler.accept_chunk("f-1", 0, b"a")
        await assembler.accept_chunk("f-1", 1, b"b")
        os.remove(session.part_path(1))

        with pytest.raises(OSError):
            await assembler.finalize("f-1")

        assert os.listdir(settings.upload_directory) == []
        assert not os.path.exists(session.assembly_dir)

    @pytest.mark.asyncio
    async def test_expire_uploads(self, assembler):
        stale = await assembler.accept_whole("old.mp4", io.BytesIO(b"old"))
        stale.stored_at -= 100
        fresh = await assembler.accept_whole("new.mp4", io.BytesIO(b"new"))

        assert assembler.expire_uploads(max_age_seconds=10) == 1

        assert not os.path.exists(stale.path)
        with pytest.raises(UploadError):
            assembler.claim(stale.file_id)
        assert assembler.claim(fresh.file_id) == fresh

    @pytest.mark.asyncio
    async def test_expire_uploads_skips_claimed(self, assembler):
        uploaded = await assembler.accept_whole("a.mp4", io.BytesIO(b"a"))
        assembler.claim(uploaded.file_id)
        uploaded.stored_at -= 100

        assert assembler.expire_uploads(max_age_seconds=10) == 0
        assert os.path.exists(uploaded.path)


class TestWholeFileUpload:
    """Tests for single-shot uploads and handoff."""

    @pytest.mark.asyncio
    async def test_accept_and_claim(self, assembler):
        uploaded = await assembler.accept_whole("My Clip.mp4", io.BytesIO(b"video"))

        assert uploaded.size == 5
        assert uploaded.path.endswith("My_Clip.mp4")
        assert assembler.claim(uploaded.file_id) == uploaded
        with pytest.raises(UploadError):
            assembler.claim(uploaded.file_id)

    @pytest.mark.asyncio
    async def test_unregistered_upload_cannot_be_claimed(self, assembler):
        uploaded = await assembler.accept_whole("a.mp4", io.BytesIO(b"v"), register=False)
        with pytest.raises(UploadError):
            assembler.claim(uploaded.file_id)

    @pytest.mark.asyncio
    async def test_declared_size_over_limit(self, settings):
        small = UploadAssembler(settings.model_copy(update={"max_whole_upload_bytes": 4}))
        with pytest.raises(UploadTooLargeError):
            await small.accept_whole("a.mp4", io.BytesIO(b"12345"), size=5)
        assert os.listdir(settings.upload_directory) == []

    @pytest.mark.asyncio
    async def test_stream_over_limit_leaves_no_partial_file(self, settings):
        small = UploadAssembler(settings.model_copy(update={"max_whole_upload_bytes": 4}))
        with pytest.raises(UploadTooLargeError):
            await small.accept_whole("a.mp4", io.BytesIO(b"123456789"))
        assert os.listdir(settings.upload_directory) == []

    @pytest.mark.asyncio
    async def test_discard_removes_files(self, assembler):
        uploaded = await assembler.accept_whole("a.mp4", io.BytesIO(b"v"))
        assembler.discard([uploaded])

        assert not os.path.exists(uploaded.path)
        with pytest.raises(UploadError):
            assembler.claim(uploaded.file_id)


def test_safe_file_name():
    assert safe_file_name("../../etc/passwd") == "passwd"
    assert safe_file_name("my video (1).mp4") == "my_video__1_.mp4"
    assert safe_file_name("") == "upload.bin"
