"""Listing and filtering of notes.

Two matching strategies are available:

- ``fts``: the filter is split into words and each word is matched as a
  token prefix against the FTS5 index (``"caf"`` finds "café au lait",
  ``"ABC"`` does not find "XABCY").
- ``like``: the folded filter is matched as a substring of the folded title
  or body (``"ABC"`` finds "XABCY").

Both are case- and diacritic-insensitive and return notes in display order.
"""
import logging
import re
from typing import Any, List, Optional

from sqlalchemy import func, or_, select, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DatabaseError as SQLAlchemyDatabaseError
from sqlalchemy.exc import OperationalError as SQLAlchemyOperationalError
from sqlalchemy.exc import SQLAlchemyError

from notestore.exceptions import ConfigurationError, ErrorCode, QueryFailedError
from notestore.models.db_models import NOTE_ORDERING, notes_table
from notestore.models.schema import Note
from notestore.storage.codec import decode
from notestore.storage.schema_manager import rebuild_search_index
from notestore.utils import escape_like_pattern, fold_text

logger = logging.getLogger(__name__)

_TOKEN_PATTERN = re.compile(r"\w+", re.UNICODE)

_FTS_LIST_SQL = text("""
    SELECT id, date, "order", favorite, title, notes
    FROM notes
    WHERE rowid IN (SELECT rowid FROM notes_fts WHERE notes_fts MATCH :query)
    ORDER BY "order" DESC, date DESC
""")


class NoteQuery:
    """Builds and runs note listings with graceful search degradation.

    Args:
        engine: SQLAlchemy engine used for database access.
        strategy: "fts" for the token-prefix index, "like" for substring scan.
    """

    def __init__(self, engine: Engine, strategy: str = "fts") -> None:
        if strategy not in ("fts", "like"):
            raise ConfigurationError(
                f"Unknown search strategy: {strategy!r}", config_key="search_strategy"
            )
        self.engine = engine
        self.strategy = strategy
        self.fts_available: bool = strategy == "fts"

    # ------------------------------------------------------------------
    # Public query API
    # ------------------------------------------------------------------

    def list(self, filter_text: Optional[str] = "") -> List[Note]:
        """List notes matching the filter, in display order.

        Args:
            filter_text: Text to match against title and body. Blank or
                whitespace-only filters return every note.

        Returns:
            Notes ordered by order descending, then date descending.

        Raises:
            QueryFailedError: If the listing query cannot be executed.
            MalformedRowError: If a stored row cannot be decoded.
        """
        query = (filter_text or "").strip()
        if not query:
            return self._list_all()

        if self.fts_available:
            match = self.build_match_expression(query)
            if match is not None:
                results = self._search_index(query, match)
                if results is not None:
                    return results
        return self._scan(query)

    def rebuild(self) -> int:
        """Rebuild the FTS index from the notes table."""
        with self.engine.begin() as conn:
            return rebuild_search_index(conn)

    def reset_availability(self) -> bool:
        """Re-enable FTS after a manual repair."""
        if self.strategy != "fts":
            return False
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    text("INSERT INTO notes_fts(notes_fts) VALUES('integrity-check')")
                )
            self.fts_available = True
            logger.info("FTS5 availability reset, FTS5 is now enabled")
            return True
        except SQLAlchemyError as e:
            logger.error(f"FTS5 still unavailable: {e}")
            self.fts_available = False
            return False

    # ------------------------------------------------------------------
    # Query building helpers
    # ------------------------------------------------------------------

    @staticmethod
    def build_match_expression(query: str) -> Optional[str]:
        """Turn free text into an FTS5 expression of quoted prefix terms.

        Every word must match (implicit AND). The text is folded first, so
        decomposed accents do not split words. Returns None when the text
        contains no word characters.
        """
        tokens = _TOKEN_PATTERN.findall(fold_text(query))
        if not tokens:
            return None
        return " ".join(f'"{token}"*' for token in tokens)

    # ------------------------------------------------------------------
    # Strategies
    # ------------------------------------------------------------------

    def _list_all(self) -> List[Note]:
        stmt = select(notes_table).order_by(*NOTE_ORDERING)
        return self._fetch(stmt, None)

    def _scan(self, query: str) -> List[Note]:
        """Folded substring scan over title and body."""
        term = f"%{escape_like_pattern(fold_text(query))}%"
        stmt = (
            select(notes_table)
            .where(
                or_(
                    func.fold(notes_table.c.title).like(term, escape="\\"),
                    func.fold(notes_table.c.notes).like(term, escape="\\"),
                )
            )
            .order_by(*NOTE_ORDERING)
        )
        return self._fetch(stmt, query)

    def _search_index(self, query: str, match: str, retry: bool = True) -> Optional[List[Note]]:
        """Search the FTS index; None means the caller should fall back to a scan."""
        try:
            with self.engine.connect() as conn:
                rows = conn.execute(_FTS_LIST_SQL, {"query": match}).mappings().all()
        except SQLAlchemyOperationalError as e:
            message = str(e).lower()
            if "no such table" in message or "no such module" in message:
                logger.warning(f"FTS5 index unavailable: {e}. Disabling FTS5 for this session.")
                self.fts_available = False
            else:
                logger.warning(f"FTS5 query failed for '{query}': {e}. Using fallback search.")
            return None
        except SQLAlchemyDatabaseError as e:
            error_msg = str(e).lower()
            if retry and ("malformed" in error_msg or "corrupt" in error_msg):
                logger.error(f"FTS5 corruption detected: {e}. Attempting auto-rebuild...")
                if self._attempt_recovery():
                    logger.info("FTS5 rebuilt successfully, retrying search")
                    return self._search_index(query, match, retry=False)
                logger.error("FTS5 recovery failed. Disabling FTS5 for this session.")
                self.fts_available = False
            else:
                logger.error(f"FTS5 database error: {e}. Using fallback search.")
            return None

        notes = [decode(row) for row in rows]
        logger.debug(f"FTS5 search returned {len(notes)} notes for query '{query}'")
        return notes

    def _fetch(self, stmt: Any, query: Optional[str]) -> List[Note]:
        try:
            with self.engine.connect() as conn:
                rows = conn.execute(stmt).mappings().all()
        except SQLAlchemyError as e:
            raise QueryFailedError(
                f"Listing notes failed: {e}",
                query=query,
                code=ErrorCode.QUERY_FAILED,
                original_error=e,
            ) from e
        return [decode(row) for row in rows]

    def _attempt_recovery(self) -> bool:
        """Attempt to recover FTS5 by rebuilding the index."""
        try:
            count = self.rebuild()
            logger.info(f"FTS5 index rebuilt with {count} notes")
            return True
        except SQLAlchemyError as e:
            logger.error(f"FTS5 rebuild failed: {e}")
            return False
