"""Research brief files: markdown topic with optional YAML frontmatter."""

from pathlib import Path

import frontmatter


def parse_brief(file_path: Path) -> tuple[str, dict]:
    """Parse a markdown brief with optional YAML frontmatter.

    Returns:
        (topic, metadata) where topic is the body text and metadata may hold
        mode (str), rounds (int), queries (list[str]), context (str) and
        outline (path to a ready-made outline, str).
        If no frontmatter, metadata is {}.
    """
    post = frontmatter.load(str(file_path))
    topic = post.content.strip()
    metadata = dict(post.metadata)
    queries = metadata.get("queries")
    if isinstance(queries, str):
        metadata["queries"] = [q.strip() for q in queries.split(",") if q.strip()]
    return topic, metadata
