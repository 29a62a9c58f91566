"""
Tests for default scoping and explicit lifecycle queries.
"""

from datetime import timedelta

import pytest
from lifecycle_models import Category, Comment, Like, Post
from sqlalchemy import select

from soft_lifecycle.config import LifecycleConfig, set_config
from soft_lifecycle.lifecycle import (
    LifecycleSelect,
    NotLifecycleEnabledError,
    Visibility,
)


@pytest.fixture
def comments(db_session):
    """Two comments on a post and two without, one of each destroyed."""
    post = Post(title="Scoped")
    first = Comment(body="first", post=post)
    second = Comment(body="second", post=post)
    orphan = Comment(body="orphan")
    fourth = Comment(body="fourth")
    db_session.add_all([post, first, second, orphan, fourth])
    db_session.commit()

    second.destroy()
    fourth.destroy()
    db_session.commit()

    return {
        "post": post,
        "first": first,
        "second": second,
        "orphan": orphan,
        "fourth": fourth,
    }


def bodies(records):
    return sorted(record.body for record in records)


class TestDefaultScope:
    """Test destroyed rows are hidden from ordinary ORM queries."""

    def test_select_hides_destroyed(self, db_session, comments):
        """Test a plain select returns active rows only."""
        result = db_session.scalars(select(Comment)).all()
        assert bodies(result) == ["first", "orphan"]

    def test_filtered_select_hides_destroyed(self, db_session, comments):
        """Test user predicates combine with the default scope."""
        result = db_session.scalars(
            select(Comment).where(Comment.body.in_(["first", "second"]))
        ).all()
        assert bodies(result) == ["first"]

    def test_execution_option_includes_destroyed(self, db_session, comments):
        """Test the include_destroyed execution option bypasses the scope."""
        stmt = select(Comment).execution_options(include_destroyed=True)
        assert len(db_session.scalars(stmt).all()) == 4

    def test_custom_execution_option_name(self, db_session, comments):
        """Test the bypass option name comes from configuration."""
        set_config(LifecycleConfig(include_destroyed_option="with_trashed"))

        stmt = select(Comment).execution_options(with_trashed=True)
        assert len(db_session.scalars(stmt).all()) == 4

        stmt = select(Comment).execution_options(include_destroyed=True)
        assert len(db_session.scalars(stmt).all()) == 2

    def test_relationship_load_hides_destroyed(self, db_session, comments):
        """Test collection loads skip destroyed members."""
        assert bodies(comments["post"].comments) == ["first"]

    def test_traverse_destroyed_relationship(self, db_session, comments):
        """Test a relation declared to traverse destroyed members loads them."""
        assert bodies(comments["post"].all_comments) == ["first", "second"]

    def test_polymorphic_relationship_load(self, db_session, comments):
        """Test polymorphic collections are scoped too."""
        comment = comments["first"]
        kept = Like(likeable=comment)
        dropped = Like(likeable=comment)
        db_session.add_all([kept, dropped])
        db_session.commit()

        dropped.destroy()
        db_session.commit()

        assert comment.likes == [kept]

    def test_get_hides_destroyed(self, db_session, comments):
        """Test primary key lookups of unloaded rows honor the scope."""
        comment_id = comments["second"].id
        db_session.expunge_all()

        assert db_session.get(Comment, comment_id) is None

    def test_get_unscoped(self, db_session, comments):
        """Test get_unscoped finds destroyed rows."""
        comment_id = comments["second"].id
        db_session.expunge_all()

        comment = Comment.get_unscoped(db_session, comment_id)
        assert comment is not None
        assert comment.body == "second"
        assert comment.is_destroyed is True

    def test_expired_destroyed_record_reloads(self, db_session, comments):
        """Test attributes of an expired destroyed record can still be read."""
        second = comments["second"]
        db_session.expire(second)

        assert second.body == "second"
        assert second.destroyed_at is not None


class TestLifecycleSelect:
    """Test explicit visibility query builders."""

    def test_active(self, db_session, comments):
        """Test active() returns rows with null destroyed_at."""
        assert bodies(Comment.active().all(db_session)) == ["first", "orphan"]

    def test_destroyed(self, db_session, comments):
        """Test destroyed() returns only destroyed rows."""
        assert bodies(Comment.destroyed().all(db_session)) == ["fourth", "second"]

    def test_unscoped(self, db_session, comments):
        """Test unscoped() returns every row."""
        assert Comment.unscoped().count(db_session) == 4

    def test_where_composes(self, db_session, comments):
        """Test where() adds predicates without touching visibility."""
        query = Comment.unscoped().where(Comment.body.in_(["first", "fourth"]))

        assert query.count(db_session) == 2
        assert bodies(query.destroyed().all(db_session)) == ["fourth"]
        assert bodies(query.active().all(db_session)) == ["first"]

    def test_first(self, db_session, comments):
        """Test first() returns one record or None."""
        found = Comment.destroyed().where(Comment.body == "fourth").first(db_session)
        assert found is comments["fourth"]
        assert Comment.active().where(Comment.body == "fourth").first(db_session) is None

    def test_builders_are_immutable(self, db_session, comments):
        """Test deriving a query leaves the original unchanged."""
        base = Comment.active()
        base.where(Comment.body == "first")
        base.destroyed()

        assert base.visibility == Visibility.ACTIVE
        assert base.criteria == ()

    def test_related_destroyed(self, db_session, comments):
        """Test destroyed members of one relation."""
        post = comments["post"]
        assert bodies(post.related("comments").destroyed().all(db_session)) == ["second"]

    def test_related_follows_relation_visibility(self, db_session, comments):
        """Test related() of a traverse-destroyed relation includes destroyed rows."""
        post = comments["post"]

        assert post.related("comments").count(db_session) == 1
        assert post.related("all_comments").count(db_session) == 2

    def test_related_rejects_columns(self, db_session, comments):
        """Test related() only accepts relationships."""
        with pytest.raises(ValueError):
            comments["post"].related("title")

    def test_destroyed_at_instant(self, db_session, comments):
        """Test destroyed(at) matches one cascade instant exactly."""
        post = comments["post"]
        second = comments["second"]

        post.destroy()
        instant = post.destroyed_at
        second.restore()
        second.destroy(instant - timedelta(hours=1))

        destroyed_together = post.related("comments").destroyed(instant)
        assert bodies(destroyed_together.all(db_session)) == ["first"]
        assert Post.destroyed(instant).count(db_session) == 1
        assert Comment.destroyed(instant - timedelta(hours=1)).count(db_session) == 1

    def test_statement_carries_bypass_option(self):
        """Test generated statements opt out of the default scope."""
        stmt = Comment.destroyed().statement()
        assert stmt.get_execution_options()["include_destroyed"] is True

    def test_destroyed_scope_requires_lifecycle(self):
        """Test a destroyed scope on a plain model raises."""
        with pytest.raises(NotLifecycleEnabledError) as exc:
            LifecycleSelect(Category, Visibility.DESTROYED)

        assert "destroyed scope" in str(exc.value)

    def test_plain_model_active_scope(self, db_session):
        """Test active and unscoped queries of plain models return every row."""
        db_session.add_all([Category(name="news"), Category(name="howto")])
        db_session.commit()

        assert LifecycleSelect(Category).count(db_session) == 2
        assert LifecycleSelect(Category, Visibility.ALL).count(db_session) == 2

    def test_repr(self):
        """Test the builder describes itself."""
        assert repr(Comment.unscoped()) == "<LifecycleSelect Comment all>"
