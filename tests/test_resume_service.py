import asyncio
import uuid

import pytest

from atspect.core.exceptions import ResumeNotFoundError, ValidationError
from atspect.schemas.resume import ResumeCreate

from tests.conftest import sample_feedback


def new_resume(user_id="user-123", **overrides):
    data = dict(
        id=str(uuid.uuid4()),
        user_id=user_id,
        company_name="Acme",
        job_title="Backend Engineer",
        job_description="Build and operate Python services for the platform team.",
        resume_path=f"{user_id}/pdf/1700000000000_abc123_resume.pdf",
        image_path=f"{user_id}/image/1700000000000_def456_resume-preview.png",
    )
    data.update(overrides)
    return ResumeCreate(**data)


def test_create_and_get(resume_service):
    """Test creating and reading a resume record."""
    data = new_resume()
    created = asyncio.run(resume_service.create(data))
    assert created.id == data.id
    assert created.feedback is None
    assert created.created_at is not None

    fetched = asyncio.run(resume_service.get_by_id(data.id, "user-123"))
    assert fetched.company_name == "Acme"
    assert fetched.resume_path == data.resume_path


def test_get_by_id_scoped_to_owner(resume_service):
    """Test records are only visible to their owner."""
    data = new_resume()
    asyncio.run(resume_service.create(data))
    with pytest.raises(ResumeNotFoundError):
        asyncio.run(resume_service.get_by_id(data.id, "someone-else"))


def test_get_by_id_requires_id(resume_service):
    """Test reading a record needs an id."""
    with pytest.raises(ValidationError) as exc_info:
        asyncio.run(resume_service.get_by_id(""))
    assert exc_info.value.error_code == "INVALID_RESUME_ID"


def test_get_all_only_returns_own_resumes(resume_service):
    """Test listing only returns the user's resumes."""
    asyncio.run(resume_service.create(new_resume()))
    asyncio.run(resume_service.create(new_resume()))
    asyncio.run(resume_service.create(new_resume(user_id="user-456")))

    resumes = asyncio.run(resume_service.get_all("user-123"))
    assert len(resumes) == 2
    assert all(r.user_id == "user-123" for r in resumes)


def test_get_all_requires_user_id(resume_service):
    """Test listing needs a user id."""
    with pytest.raises(ValidationError) as exc_info:
        asyncio.run(resume_service.get_all("  "))
    assert exc_info.value.error_code == "INVALID_USER_ID"


def test_update_feedback_sets_scores(resume_service):
    """Test saving feedback mirrors the scores."""
    data = new_resume()
    asyncio.run(resume_service.create(data))

    updated = asyncio.run(resume_service.update_feedback(data.id, sample_feedback(81)))
    assert updated.feedback["overall_score"] == 81
    assert updated.overall_score == 81
    assert updated.ats_score == 72
    assert updated.updated_at is not None


def test_update_feedback_validation_and_missing_row(resume_service):
    """Test feedback update validation and a missing row."""
    with pytest.raises(ValidationError) as exc_info:
        asyncio.run(resume_service.update_feedback("abc", {}))
    assert exc_info.value.error_code == "INVALID_UPDATE_DATA"

    with pytest.raises(ResumeNotFoundError):
        asyncio.run(resume_service.update_feedback(str(uuid.uuid4()), sample_feedback()))


def test_delete_row(resume_service):
    """Test deleting only the row."""
    data = new_resume()
    asyncio.run(resume_service.create(data))
    assert asyncio.run(resume_service.delete_row(data.id)) is True
    assert asyncio.run(resume_service.delete_row(data.id)) is False


def test_delete_removes_row_and_blobs(resume_service, storage):
    """Test deleting a resume removes its row and blobs."""
    data = new_resume()
    storage.blobs[("resumes", data.resume_path)] = b"%PDF"
    storage.blobs[("resume-images", data.image_path)] = b"PNG"

    async def scenario():
        await resume_service.create(data)
        await resume_service.delete(data.id, "user-123")
        await resume_service.wait_for_cleanups()

    asyncio.run(scenario())

    with pytest.raises(ResumeNotFoundError):
        asyncio.run(resume_service.get_by_id(data.id))
    assert storage.blobs == {}
    assert set(storage.deleted) == {("resumes", data.resume_path), ("resume-images", data.image_path)}


def test_delete_succeeds_when_blob_cleanup_fails(resume_service, storage):
    """Test delete succeeds even if blob cleanup fails."""
    data = new_resume(image_path=None)
    storage.fail_deletes = True

    async def scenario():
        await resume_service.create(data)
        await resume_service.delete(data.id, "user-123")
        await resume_service.wait_for_cleanups()

    asyncio.run(scenario())
    assert asyncio.run(resume_service.get_all("user-123")) == []


def test_delete_unknown_resume(resume_service):
    """Test deleting an unknown resume."""
    with pytest.raises(ResumeNotFoundError):
        asyncio.run(resume_service.delete(str(uuid.uuid4()), "user-123"))
