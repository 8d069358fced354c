"""Append-only JSONL trade journal."""

from journal.writer import JournalWriter, read_journal, summarize

__all__ = ["JournalWriter", "read_journal", "summarize"]
