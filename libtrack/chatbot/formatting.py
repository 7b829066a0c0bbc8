"""Deterministic rendering of tool results into chat-ready markdown.

The router prefers these templates over the model's own wording whenever data tools ran,
so titles shown to users always come from the database.
"""
import logging
import re
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

NO_RESULTS_MESSAGE = (
    "🔎 I couldn't find any matching items in the WMSU catalog. "
    "Would you like me to try different keywords or view popular books instead?"
)
GENERIC_ERROR_MESSAGE = (
    "I apologize, but I encountered an error processing your request. Please try again or rephrase your question."
)
STREAM_ERROR_MESSAGE = "I encountered an error. Please try again."

AUTHOR_KEYS = (
    "author", "authors", "author_name", "author_names", "creators", "creator", "research_authors", "contributors",
)
MAX_LOCATIONS = 6
ABSTRACT_PREVIEW_CHARS = 300


def research_no_results_message(query: str) -> str:
    return (
        f'🔎 I searched the WMSU catalog for exact matches for "{query}" but found no results. '
        "Would you like me to try alternate spellings or search broader keywords?"
    )


def _is_zero_result(entry: Dict[str, Any], payload_key: str) -> bool:
    result = entry.get("result") or {}
    if not result:
        return False
    items = result.get(payload_key)
    return result.get("count") == 0 or (isinstance(items, list) and not items)


def has_zero_result_search(tool_results: List[Dict[str, Any]]) -> bool:
    """True when a book or research-paper search in this turn came back empty."""
    for entry in tool_results:
        if entry.get("name") == "search_books" and _is_zero_result(entry, "books"):
            return True
        if entry.get("name") == "search_research_papers" and _is_zero_result(entry, "papers"):
            return True
    return False


def extract_authors(paper: Any) -> Optional[str]:
    if not paper:
        return None
    if isinstance(paper, dict):
        for key in AUTHOR_KEYS:
            value = paper.get(key)
            if not value:
                continue
            if isinstance(value, (list, tuple)):
                return ", ".join(str(v) for v in value)
            if isinstance(value, str):
                return value
        return None
    if isinstance(paper, (list, tuple)):
        return ", ".join(str(v) for v in paper)
    if isinstance(paper, str):
        return paper
    return None


def _format_search_books(books: List[Dict[str, Any]]) -> str:
    # One entry per title+author; physical copies are counted, not listed
    grouped: Dict[str, Dict[str, Any]] = {}
    for book in books:
        title = str(book.get("title") or book.get("book_title") or "Unknown Title").strip()
        author = str(book.get("author") or "Unknown Author").strip()
        key = f"{title}||{author}"
        entry = grouped.setdefault(
            key,
            {"title": title, "author": author, "available": 0, "unavailable": 0, "locations": [], "year": None},
        )
        status = str(book.get("availability_status") or book.get("status") or "")
        if status.lower() == "available":
            entry["available"] += 1
        else:
            entry["unavailable"] += 1
        location = book.get("book_number") or book.get("shelf_location") or book.get("batch_registration_key")
        if location and location not in entry["locations"]:
            entry["locations"].append(location)
        if not entry["year"]:
            entry["year"] = book.get("publication_year") or book.get("book_year")

    lines = ["🔍 **Search Results**\n"]
    for entry in grouped.values():
        copies = entry["available"] + entry["unavailable"]
        lines.append(f"📚 **{entry['title']}** by {entry['author']}")
        if entry["year"]:
            lines.append(f"📅 Year: {entry['year']}")
        lines.append(f"✅ Copies: {copies} • Available: {entry['available']}")
        locations = entry["locations"][:MAX_LOCATIONS]
        if locations:
            lines.append(f"📍 Locations: {', '.join(str(loc) for loc in locations)}")
        lines.append("")
    return "\n".join(lines)


def _format_popular_books(books: List[Dict[str, Any]]) -> str:
    lines = ["⭐ **Recommended Popular Books**\n"]
    for book in books:
        title = book.get("book_title") or book.get("title") or "Unknown Title"
        author = book.get("author") or "Unknown Author"
        borrow_count = f"({book['borrow_count']} borrowings)" if book.get("borrow_count") is not None else ""
        lines.append(f"📚 **{title}** by {author} {borrow_count}".rstrip())
        lines.append(f"✅ Status: {book.get('status') or 'Unknown'}")
        if book.get("category"):
            lines.append(f"📂 Category: {book['category']}")
        lines.append("")
    return "\n".join(lines)


def _format_recommendations(books: List[Dict[str, Any]]) -> str:
    lines = ["💡 **Personalized Recommendations**\n"]
    for book in books:
        title = book.get("title") or book.get("book_title") or "Unknown Title"
        author = book.get("author") or "Unknown Author"
        lines.append(f"📚 **{title}** by {author}")
        lines.append(f"✅ Status: {book.get('status') or 'Unknown'}")
        if book.get("average_rating"):
            lines.append(f"⭐ Rating: {float(book['average_rating']):.1f} ({book.get('rating_count') or 0} ratings)")
        lines.append("")
    return "\n".join(lines)


def _format_borrowed_books(borrowed: List[Dict[str, Any]]) -> str:
    lines = ["📦 **Your Borrowed Books**\n"]
    for row in borrowed:
        title = row.get("title") or row.get("book_title") or "Unknown Title"
        author = row.get("author") or "Unknown Author"
        lines.append(f"📚 **{title}** by {author}")
        if row.get("status"):
            lines.append(f"✅ Status: {row['status']}")
        due = row.get("due_date")
        if due:
            if row.get("days_until_due") is not None:
                lines.append(f"📅 Due: {due} • {row['days_until_due']} day(s)")
            else:
                lines.append(f"📅 Due: {due}")
        lines.append("")
    return "\n".join(lines)


def _format_faqs(faqs: List[Dict[str, Any]]) -> str:
    lines = ["📝 **Frequently Asked Questions**\n"]
    for faq in faqs:
        lines.append(f"• **{faq.get('question')}**")
        if faq.get("answer"):
            lines.append(f"  - {faq['answer']}")
    return "\n".join(lines)


def _format_rules(rules: List[Dict[str, Any]]) -> str:
    lines = ["📝 **Library Rules & Guidelines**\n"]
    for rule in rules:
        lines.append(f"• **{rule.get('rule_title')}** - {rule.get('rule_description')}")
    return "\n".join(lines)


def _format_research_papers(papers: List[Dict[str, Any]]) -> str:
    lines = ["🔎 **Research Papers Found**\n"]
    for paper in papers:
        title = paper.get("title") or paper.get("research_title") or "Unknown Title"
        authors = extract_authors(paper) or "Unknown Author(s)"
        authors = re.sub(r",(\S)", r", \1", authors)
        year = paper.get("publication_year") or paper.get("year_publication")
        department = paper.get("category") or paper.get("department_name")

        lines.append(f"📄 **{title}**")
        lines.append(f"👥 Authors: {authors}")
        if year:
            lines.append(f"📅 Year: {year}")
        lines.append(f"✅ Status: {paper.get('availability_status') or paper.get('status') or 'Unknown'}")
        if department:
            lines.append(f"🏷️ Department: {department}")
        abstract = paper.get("research_abstract")
        if abstract:
            suffix = "..." if len(abstract) > ABSTRACT_PREVIEW_CHARS else ""
            lines.append(f"📝 Abstract: {abstract[:ABSTRACT_PREVIEW_CHARS]}{suffix}")
        lines.append("")
    return "\n".join(lines)


# tool name -> (payload key, renderer, render empty lists)
FORMATTERS = {
    "search_books": ("books", _format_search_books, False),
    "get_popular_books": ("books", _format_popular_books, False),
    "recommend_books": ("recommendations", _format_recommendations, False),
    "get_user_borrowed_books": ("borrowed_books", _format_borrowed_books, False),
    "get_faqs": ("faqs", _format_faqs, True),
    "get_library_rules": ("rules", _format_rules, True),
    "search_research_papers": ("papers", _format_research_papers, False),
}


def format_tool_results(tool_results: List[Dict[str, Any]], fallback_message: str = "") -> Optional[str]:
    """Render the first successful result that has a template.

    `tool_results` holds `{"name", "result"}` entries in execution order. Returns the fallback
    (or None when it is empty) if nothing could be rendered.
    """
    try:
        for entry in tool_results:
            result = entry.get("result") or {}
            if not result.get("success"):
                continue
            formatter = FORMATTERS.get(entry.get("name"))
            if formatter is None:
                continue
            payload_key, render, render_empty = formatter
            items = result.get(payload_key)
            if not isinstance(items, list) or (not items and not render_empty):
                continue
            return render(items)
    except Exception as e:
        logger.error(f"[Formatting] Error formatting tool results: {e}", exc_info=True)
        return None
    return fallback_message or None
