#!/usr/bin/env python3
"""
Blog Lifecycle Example - Soft Lifecycle Toolkit

IMPORTANT: This is a demonstration file prioritizing readability over
production readiness. It uses an in-memory SQLite database and prints to the
console instead of logging.

Demonstrates the destroyed_at lifecycle on a small blog:
- Destroying a post together with its comments
- Hard deletion of dependents without destroyed_at
- Default scoping and explicit destroyed queries
- Restoring only what was destroyed together
- Counter caches of active dependents
"""

from datetime import datetime, timedelta, timezone

from sqlalchemy import Column, ForeignKey, Integer, String, create_engine, event, select
from sqlalchemy.orm import declarative_base, relationship, sessionmaker

from soft_lifecycle.lifecycle import (
    DestroyedAtMixin,
    LifecycleEvent,
    counter_cache,
    dependent,
    lifecycle_hook,
)

Base = declarative_base()


class Blog(Base):
    """Plain owner: no destroyed_at column."""

    __tablename__ = "blogs"

    id = Column(Integer, primary_key=True)
    name = Column(String, nullable=False)
    posts_count = Column(Integer, default=0, nullable=False)

    posts = relationship("Post", back_populates="blog")


class Post(Base, DestroyedAtMixin):
    """Post that takes its comments and tags down with it."""

    __tablename__ = "posts"

    id = Column(Integer, primary_key=True)
    blog_id = Column(Integer, ForeignKey("blogs.id"))
    title = Column(String, nullable=False)

    blog = relationship("Blog", back_populates="posts", info=counter_cache("posts_count"))
    comments = relationship("Comment", back_populates="post", info=dependent("destroy"))
    tags = relationship("Tag", back_populates="post", info=dependent("destroy"))

    @lifecycle_hook(LifecycleEvent.AFTER_DESTROY_COMMIT)
    def announce(self):
        print(f"  📣 Post '{self.title}' is gone (committed)")


class Comment(Base, DestroyedAtMixin):
    __tablename__ = "comments"

    id = Column(Integer, primary_key=True)
    post_id = Column(Integer, ForeignKey("posts.id"))
    body = Column(String, nullable=False)

    post = relationship("Post", back_populates="comments")


class Tag(Base):
    """Plain dependent: removed from storage when its post is destroyed."""

    __tablename__ = "tags"

    id = Column(Integer, primary_key=True)
    post_id = Column(Integer, ForeignKey("posts.id"))
    label = Column(String, nullable=False)

    post = relationship("Post", back_populates="tags")


def _enable_savepoints(engine):
    @event.listens_for(engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN")


def demonstrate_lifecycle() -> None:
    """Walk through destroy, scoping, restore and counters."""
    print("🗑️  Blog Lifecycle Example\n")

    engine = create_engine("sqlite:///:memory:")
    _enable_savepoints(engine)
    Base.metadata.create_all(engine)
    Session = sessionmaker(bind=engine)
    session = Session()

    # 1. Create test data
    print("1️⃣ Creating Test Data:")

    blog = Blog(name="Engineering")
    launch = Post(title="Launch day", blog=blog)
    launch.comments.extend([Comment(body="Congrats!"), Comment(body="Finally")])
    launch.tags.append(Tag(label="news"))
    draft = Post(title="Draft", blog=blog)
    session.add(blog)
    session.commit()

    print(f"  ✓ Created blog with {blog.posts_count} posts")
    print(f"  ✓ Created {len(session.scalars(select(Comment)).all())} comments\n")

    # 2. A comment destroyed on its own, a day earlier
    print("2️⃣ Destroying a Single Comment:")

    spam = launch.comments[1]
    spam.destroy(datetime.now(timezone.utc) - timedelta(days=1))
    session.commit()

    print(f"  ✓ Destroyed comment '{spam.body}' at {spam.destroyed_at}")
    print(f"  Visible comments: {len(session.scalars(select(Comment)).all())}\n")

    # 3. Cascade destroy
    print("3️⃣ Destroying a Post with its Dependents:")

    result = launch.destroy()
    print(f"  ✓ Success: {result.success}")
    print(f"  Soft destroyed: {[str(ref) for ref in result.transitioned]}")
    print(f"  Hard deleted: {[str(ref) for ref in result.hard_deleted]}")
    session.commit()

    print(f"  Blog posts_count: {blog.posts_count}")
    print(f"  Visible posts: {[p.title for p in session.scalars(select(Post))]}\n")

    # 4. Query destroyed records
    print("4️⃣ Querying Destroyed Records:")

    for post in Post.destroyed().all(session):
        print(f"    - {post.title}: destroyed at {post.destroyed_at}")
    together = launch.related("comments").destroyed(launch.destroyed_at)
    print(f"  Comments destroyed with the post: {together.count(session)}")
    print(f"  All comments (unscoped): {Comment.unscoped().count(session)}\n")

    # 5. Restore
    print("5️⃣ Restoring the Post:")

    launch.restore()
    session.commit()

    print(f"  Post active: {not launch.is_destroyed}")
    print(f"  Comments back: {[c.body for c in launch.related('comments').all(session)]}")
    print(f"  Earlier destroyed comment still destroyed: {spam.is_destroyed}")
    print(f"  Tags (hard deleted, not restored): {len(launch.tags)}")
    print(f"  Blog posts_count: {blog.posts_count}\n")

    # 6. Deferred destruction
    print("6️⃣ Destroying on Commit:")

    draft.mark_for_destruction()
    print(f"  Marked: {draft.marked_for_destruction}")
    session.commit()
    print(f"  Destroyed after commit: {draft.is_destroyed}")

    print("\n✅ Lifecycle example completed!")
    print("   Destroyed records stay in storage for:")
    print("   • Restoring accidental deletions")
    print("   • Auditing what was removed and when")

    session.close()


if __name__ == "__main__":
    demonstrate_lifecycle()
