"""
Tests for the destroyed / persisted state of lifecycle records.

Covers destroy, delete, records created already destroyed and which ORM
callbacks a transition does (and does not) trigger.
"""

from datetime import datetime, timedelta, timezone

import pytest
from lifecycle_models import Comment, Post
from sqlalchemy import select

from soft_lifecycle.lifecycle import (
    CallbackAbort,
    DetachedRecordError,
    LifecycleError,
    LifecycleEvent,
    LifecycleService,
    TransitionAction,
    register_hook,
)


@pytest.fixture
def post(db_session):
    """A committed, active post."""
    post = Post(title="Hello")
    db_session.add(post)
    db_session.commit()
    return post


def visible(session, model):
    """Rows returned by a plain ORM query."""
    return session.scalars(select(model)).all()


class TestDestroy:
    """Test destroying a single record."""

    def test_destroy_sets_destroyed_at(self, db_session, post):
        """Test destroy writes the given instant."""
        instant = datetime(2024, 1, 2, 3, 4, 5, 678901)

        result = post.destroy(instant)

        assert result.success is True
        assert result.action == TransitionAction.DESTROY
        assert result.instant == instant
        assert post.destroyed_at == instant
        assert post.is_destroyed is True

    def test_destroy_defaults_to_now(self, db_session, post):
        """Test destroy without an instant uses the current time."""
        now = datetime.now(timezone.utc).replace(tzinfo=None)

        post.destroy()

        assert abs(post.destroyed_at - now) < timedelta(seconds=5)
        assert post.destroyed_at.tzinfo is None

    def test_destroy_keeps_the_row(self, db_session, post):
        """Test the destroyed row stays in storage but leaves the default scope."""
        post.destroy()
        db_session.commit()

        assert visible(db_session, Post) == []
        assert Post.unscoped().count(db_session) == 1
        assert Post.destroyed().count(db_session) == 1

    def test_destroyed_record_is_still_persisted(self, db_session, post):
        """Test is_persisted stays True after destroy."""
        post.destroy()
        assert post.is_persisted is True

        db_session.commit()
        assert post.is_persisted is True

    def test_destroy_persists_through_commit(self, db_session, post):
        """Test the written instant survives a reload."""
        instant = datetime(2024, 5, 6, 7, 8, 9)
        post.destroy(instant)
        db_session.commit()

        db_session.expire_all()
        assert post.destroyed_at == instant

    def test_destroy_already_destroyed_is_skipped(self, db_session, post):
        """Test destroying twice keeps the first instant and runs hooks once."""
        first = datetime(2024, 1, 1, 12, 0, 0)
        post.destroy(first)

        result = post.destroy(first + timedelta(hours=1))

        assert result.success is True
        assert result.skipped is True
        assert post.destroyed_at == first
        assert post.destroy_callback_count == 1

    def test_destroy_runs_destroy_hooks_once(self, db_session, post):
        """Test the after_destroy hook fires exactly once."""
        post.destroy()
        assert post.destroy_callback_count == 1

    def test_destroy_does_not_run_update_callbacks(self, db_session, post):
        """Test destroy and restore bypass ORM update events."""
        post.destroy()
        post.restore()
        db_session.commit()

        assert post.update_callback_count is None

    def test_destroy_does_not_run_validations(self, db_session, post):
        """Test validators are not invoked by destroy or restore."""
        count = post.validation_count

        post.destroy()
        post.restore()

        assert post.validation_count == count

    def test_destroy_flushes_pending_changes_first(self, db_session, post):
        """Test unflushed attribute changes are saved along with the destroy."""
        post.title = "Renamed"
        post.destroy()
        db_session.commit()

        db_session.expire_all()
        assert post.title == "Renamed"
        assert post.update_callback_count == 1

    def test_destroy_pending_record_reports_identity(self, db_session):
        """Test the result of destroying a new record names its assigned id."""
        post = Post(title="Fresh")
        db_session.add(post)

        result = post.destroy()

        assert result.success is True
        assert post.id is not None
        assert result.record.id == str(post.id)

    def test_destroy_detached_record(self):
        """Test destroying a record outside a session raises."""
        with pytest.raises(DetachedRecordError) as exc:
            Post(title="Loose").destroy()

        assert "Post" in str(exc.value)

    def test_destroy_record_of_other_session(self, db_session, engine, post):
        """Test a service refuses records of another session."""
        other = LifecycleService(db_session.__class__(bind=engine))

        result = other.destroy(post)

        assert result.success is False
        assert "not attached" in result.error


class TestDelete:
    """Test hard deletion of lifecycle records."""

    def test_delete_removes_row(self, db_session, post):
        """Test delete removes the row from storage."""
        result = post.delete()
        db_session.commit()

        assert result.success is True
        assert result.action == TransitionAction.DELETE
        assert Post.unscoped().count(db_session) == 0

    def test_delete_is_not_persisted(self, db_session, post):
        """Test is_persisted turns False after delete."""
        post.delete()
        assert post.is_persisted is False

        db_session.commit()
        assert post.is_persisted is False

    def test_delete_destroyed_record(self, db_session, post):
        """Test a destroyed record can still be deleted."""
        post.destroy()
        post.delete()
        db_session.commit()

        assert Post.destroyed().count(db_session) == 0
        assert Post.unscoped().count(db_session) == 0

    def test_delete_skips_lifecycle_hooks(self, db_session, post):
        """Test delete runs no destroy hooks."""
        post.delete()
        assert post.destroy_callback_count is None

    def test_delete_pending_record(self, db_session):
        """Test deleting a never-flushed record just forgets it."""
        post = Post(title="Draft")
        db_session.add(post)

        post.delete()
        db_session.commit()

        assert post not in db_session
        assert Post.unscoped().count(db_session) == 0

    def test_transition_after_delete(self, db_session, post):
        """Test destroying a deleted record fails."""
        post.delete()

        result = LifecycleService(db_session).destroy(post)

        assert result.success is False
        with pytest.raises(LifecycleError):
            LifecycleService(db_session).destroy_or_raise(post)


class TestCreatedDestroyed:
    """Test records inserted with destroyed_at already set."""

    def test_created_destroyed_is_not_persisted(self, db_session):
        """Test a record inserted destroyed never counts as persisted."""
        post = Post(title="Stillborn", destroyed_at=datetime.now())
        db_session.add(post)
        db_session.commit()

        assert post.is_persisted is False
        assert visible(db_session, Post) == []
        assert Post.destroyed().count(db_session) == 1

    def test_created_active_is_persisted(self, db_session):
        """Test an ordinary insert is persisted."""
        post = Post(title="Alive")
        assert post.is_persisted is False

        db_session.add(post)
        db_session.commit()

        assert post.is_persisted is True

    def test_created_destroyed_skips_destroy_hooks(self, db_session):
        """Test inserting destroyed is not a destroy transition."""
        comment = Comment(body="Hidden", destroyed_at=datetime.now())
        db_session.add(comment)
        db_session.commit()

        assert comment.after_committed is False

    def test_created_destroyed_persisted_after_restore(self, db_session):
        """Test restoring a record inserted destroyed makes it persisted."""
        post = Post(title="Late bloomer", destroyed_at=datetime.now())
        db_session.add(post)
        db_session.commit()
        assert post.is_persisted is False

        post.restore()
        db_session.commit()

        assert post.is_persisted is True
        assert [p.id for p in visible(db_session, Post)] == [post.id]

    def test_failed_restore_keeps_created_destroyed(self, db_session):
        """Test a rolled back restore leaves the record unpersisted."""
        post = Post(title="Guarded", destroyed_at=datetime.now())
        db_session.add(post)
        db_session.commit()

        def refuse(record):
            raise CallbackAbort("no")

        register_hook(Post, LifecycleEvent.BEFORE_RESTORE, refuse)

        assert post.restore().success is False
        assert post.is_destroyed is True
        assert post.is_persisted is False
