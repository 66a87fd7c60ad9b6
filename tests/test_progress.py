import json
import pathlib
import sys

# Ensure the repository root is on the path for direct test runs.
REPO_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.append(str(REPO_ROOT))

from redis.exceptions import ConnectionError as RedisConnectionError

from exam_pipeline.workflow.utils.progress import ProgressPublisher


class RecordingRedis:
    def __init__(self, fail=False):
        self.fail = fail
        self.hashes = {}
        self.messages = []

    def hset(self, key, mapping):
        if self.fail:
            raise RedisConnectionError("connection refused")
        self.hashes[key] = mapping

    def publish(self, channel, message):
        self.messages.append((channel, json.loads(message)))


def test_disabled_without_url():
    publisher = ProgressPublisher(None, job_id="job-1")

    assert not publisher.enabled
    assert publisher.emit("lecture", "IN_PROGRESS", "chunking") is False


def test_snapshot_written_to_hash_and_channel():
    client = RecordingRedis()
    publisher = ProgressPublisher(None, job_id="job-1", client=client)

    assert publisher.emit("lecture", "COMPLETED", "summarization", progress=50, extra={"chunks": 3})

    assert client.hashes["job:job-1"]["progress"] == "50"
    channel, payload = client.messages[0]
    assert channel == "progress:job-1"
    assert payload == {"lesson": "lecture", "status": "COMPLETED", "current_step": "summarization", "progress": 50, "chunks": 3}


def test_redis_errors_are_swallowed():
    publisher = ProgressPublisher(None, job_id="job-1", client=RecordingRedis(fail=True))

    assert publisher.emit("lecture", "FAILED", "chunking") is False
