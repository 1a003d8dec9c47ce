"""Story viewer: a timed slideshow over one author's stories.

The viewer keeps ``current_index`` and ``progress`` (0-100). Each
:meth:`StoryViewer.tick` adds ``progress_step``; reaching 100 advances to the
next story, or closes the viewer after the last one. Taps on the left half go
back, taps on the right half go forward. Every time a story is entered the
``on_view`` callback fires.

Example:
    >>> viewer = StoryViewer(group.stories, on_view=lambda i, s: print(i))
    >>> viewer.open()
    0
    >>> for _ in range(50):
    ...     viewer.tick()
    1
"""

import asyncio
from collections.abc import Callable, Sequence
from typing import Any

from campusfeed.config import StoryViewPolicy, settings
from campusfeed.logging import logger
from campusfeed.models import Story, StoryGroup, User

FULL = 100


class StoryViewer:
    """Drives progress and navigation for one group of stories.

    Args:
        stories: Stories of one author, in display order
        on_view: Called with ``(index, story)`` on entering a story
        on_close: Called after the viewer closes
        on_like: Called with the current story by :meth:`like_current`
        tick_interval: Seconds between ticks in :meth:`run`
        progress_step: Progress added per tick
        view_policy: Whether revisiting a story records another view
    """

    def __init__(
        self,
        stories: Sequence[Story],
        *,
        on_view: Callable[[int, Story], Any] | None = None,
        on_close: Callable[[], Any] | None = None,
        on_like: Callable[[Story], Any] | None = None,
        tick_interval: float | None = None,
        progress_step: int | None = None,
        view_policy: StoryViewPolicy | None = None,
    ) -> None:
        self.stories = list(stories)
        self.on_view = on_view
        self.on_close = on_close
        self.on_like = on_like
        self.tick_interval = tick_interval or settings.story_tick_interval
        self.progress_step = progress_step or settings.story_progress_step
        self.view_policy = view_policy or settings.story_view_policy

        self.current_index = 0
        self.progress = 0
        self.is_open = False
        self._viewed: set[str] = set()

    @property
    def current(self) -> Story | None:
        if not self.is_open or not self.stories:
            return None
        return self.stories[self.current_index]

    @property
    def at_last(self) -> bool:
        return self.current_index >= len(self.stories) - 1

    def open(self, index: int = 0) -> int:
        """Show the story at ``index``; returns the index actually entered."""
        if not self.stories:
            logger.debug("No stories to show")
            return 0
        index = min(max(index, 0), len(self.stories) - 1)
        self.is_open = True
        self._enter(index)
        return self.current_index

    def tick(self) -> None:
        """Advance the timer by one step."""
        if not self.is_open:
            return
        self.progress = min(FULL, self.progress + self.progress_step)
        if self.progress >= FULL:
            self.next()

    def next(self) -> None:
        if not self.is_open:
            return
        if self.at_last:
            self.close()
        else:
            self._enter(self.current_index + 1)

    def previous(self) -> None:
        if not self.is_open or self.current_index == 0:
            return
        self._enter(self.current_index - 1)

    def tap(self, x: float, width: float) -> None:
        """Left half goes back, right half goes forward."""
        if x < width / 2:
            self.previous()
        else:
            self.next()

    def like_current(self) -> Story | None:
        """Hand the current story to ``on_like``; timing is untouched."""
        story = self.current
        if story is not None and self.on_like is not None:
            self.on_like(story)
        return story

    def replace(self, story: Story) -> None:
        """Swap in an updated copy of a story (e.g. after a like)."""
        self.stories = [story if s.id == story.id else s for s in self.stories]

    def close(self) -> None:
        was_open = self.is_open
        self.is_open = False
        self.current_index = 0
        self.progress = 0
        if was_open and self.on_close is not None:
            self.on_close()

    async def run(self, start: int = 0) -> None:
        """Open at ``start`` and tick until the viewer closes."""
        if not self.is_open:
            self.open(start)
        while self.is_open:
            await asyncio.sleep(self.tick_interval)
            self.tick()

    def _enter(self, index: int) -> None:
        self.current_index = index
        self.progress = 0
        story = self.stories[index]
        if self.view_policy is StoryViewPolicy.ONCE_PER_STORY and story.id in self._viewed:
            return
        self._viewed.add(story.id)
        if self.on_view is not None:
            self.on_view(index, story)


def group_stories(
    stories: Sequence[Story], viewer_id: str | None = None
) -> tuple[StoryGroup | None, list[StoryGroup]]:
    """Group a stories feed by author.

    Returns:
        The viewer's own group (or None) and the other authors' groups in
        order of first appearance
    """
    authors: dict[str, User] = {}
    grouped: dict[str, list[Story]] = {}
    for story in stories:
        author_id = story.author.id
        authors.setdefault(author_id, story.author)
        grouped.setdefault(author_id, []).append(story)

    own: StoryGroup | None = None
    others: list[StoryGroup] = []
    for author_id, items in grouped.items():
        group = StoryGroup(author=authors[author_id], stories=items)
        if viewer_id is not None and author_id == viewer_id:
            own = group
        else:
            others.append(group)
    return own, others


__all__ = ["StoryViewer", "group_stories"]
