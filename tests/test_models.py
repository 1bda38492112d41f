import unittest

from spinescan.models import BookRecord, InvalidTransition, JobState, ScanJob, UploadReceipt


class ScanJobTest(unittest.TestCase):
    def test_happy_path_transitions(self) -> None:
        job = ScanJob(payload=b"jpeg")
        for state in (JobState.UPLOADING, JobState.STREAMING, JobState.RESOLVING, JobState.DONE):
            job.transition(state)
        self.assertTrue(job.state.is_terminal)
        with self.assertRaises(InvalidTransition):
            job.transition(JobState.UPLOADING)

    def test_deferral_re_entries(self) -> None:
        job = ScanJob(payload=b"jpeg")
        job.transition(JobState.UPLOADING)
        job.transition(JobState.RATE_LIMITED, "Rate limited - retry after 2s")
        self.assertTrue(job.state.is_deferred)
        job.transition(JobState.OFFLINE)
        job.transition(JobState.UPLOADING)
        job.transition(JobState.OFFLINE)
        job.transition(JobState.CANCELED)
        self.assertIsNone(job.progress_message)

    def test_streaming_cannot_fall_back_to_deferred(self) -> None:
        job = ScanJob(payload=b"jpeg")
        job.transition(JobState.UPLOADING)
        job.transition(JobState.STREAMING)
        self.assertFalse(job.can_transition(JobState.OFFLINE))
        self.assertFalse(job.can_transition(JobState.RATE_LIMITED))
        with self.assertRaises(InvalidTransition):
            job.transition(JobState.UPLOADING)

    def test_remote_id_is_never_reassigned(self) -> None:
        job = ScanJob(payload=b"jpeg")
        job.assign_remote(UploadReceipt(job_id="remote-1", stream_url="https://scan.example.com/s/1"))
        job.assign_remote(UploadReceipt(job_id="remote-1", stream_url="https://scan.example.com/s/1"))
        with self.assertRaises(InvalidTransition):
            job.assign_remote(UploadReceipt(job_id="remote-2", stream_url="https://scan.example.com/s/2"))
        self.assertEqual(job.remote_job_id, "remote-1")

    def test_snapshot_is_detached(self) -> None:
        job = ScanJob(payload=b"jpeg")
        snapshot = job.snapshot()
        job.transition(JobState.UPLOADING, "Uploading...")
        self.assertEqual(snapshot.state, JobState.CREATED)
        self.assertEqual(job.snapshot().progress_message, "Uploading...")

    def test_ids_are_unique(self) -> None:
        self.assertNotEqual(ScanJob(payload=b"a").id, ScanJob(payload=b"a").id)


class BookRecordTest(unittest.TestCase):
    def test_from_payload(self) -> None:
        book = BookRecord.from_payload(
            {"title": " Dune ", "author": "Frank Herbert", "publishedDate": "1965", "pageCount": 412.0}
        )
        self.assertEqual(book.title, "Dune")
        self.assertEqual(book.published_date, "1965")
        self.assertEqual(book.page_count, 412)
        self.assertEqual(book.raw["title"], " Dune ")

    def test_required_fields(self) -> None:
        with self.assertRaises(ValueError):
            BookRecord.from_payload({"author": "Anon"})
        with self.assertRaises(ValueError):
            BookRecord.from_payload({"title": "Untitled"})
        with self.assertRaises(ValueError):
            BookRecord.from_payload(["title", "author"])


if __name__ == "__main__":
    unittest.main()
