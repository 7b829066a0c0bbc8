"""Deterministic chatbot used when no LLM backend is available.

Intents are matched with ordered regular expressions; data-backed intents call the same
catalog tools the model would.
"""
import logging
import re
from typing import Any, Awaitable, Callable, Dict, List, Optional, Pattern, Tuple

from libtrack.chatbot.tools.registry import execute_tool

logger = logging.getLogger(__name__)

ToolExecutor = Callable[[str, Dict[str, Any]], Awaitable[Dict[str, Any]]]

_I = re.IGNORECASE

INTENT_PATTERNS: Dict[str, List[Pattern]] = {
    "greeting": [
        re.compile(r"^(hi|hello|hey|greetings?|good\s+(morning|afternoon|evening)|howdy|yo)[!.,?\s]*$", _I),
        re.compile(r"^(what'?s?\s+up|sup)[!.,?\s]*$", _I),
    ],
    "farewell": [re.compile(r"^(bye|goodbye|see\s+you|talk\s+later|take\s+care|farewell|cya)[!.,?\s]*$", _I)],
    "thanks": [re.compile(r"^(thanks?|thank\s*you|thx|ty|appreciated?|cheers)[!.,?\s]*$", _I)],
    "help": [re.compile(r"\b(help|assist|support|guide|how\s+do\s+i)\b", _I)],
    "library_hours": [
        re.compile(r"\b(hours?|open(?:ing)?|clos(?:e|ing)|schedule|time|when.*(?:open|close|library))\b", _I),
    ],
    "book_search": [
        re.compile(r"\b(?:search|find|look(?:ing)?\s+for|where\s+(?:is|can\s+i\s+find)|locate)\b.*\b(?:book|title|author)", _I),
        re.compile(r"\b(?:book|title|author)\b.*\b(?:search|find|available|have|exist)", _I),
        re.compile(r"\b(?:do\s+you\s+have|is\s+there|got\s+any)\b.*\bbook", _I),
    ],
    "book_availability": [re.compile(r"\b(availab(?:le|ility)|in\s+stock|can\s+i\s+(?:borrow|get))\b", _I)],
    "borrow_info": [re.compile(r"\b(borrow(?:ing)?|checkout|loan|lend(?:ing)?|how\s+to\s+borrow)\b", _I)],
    "return_info": [re.compile(r"\b(return(?:ing)?|give\s+back|how\s+to\s+return)\b", _I)],
    "research_papers": [
        re.compile(r"\b(research\s+paper|thesis|dissertation|journal|academic|scholarly)\b", _I),
        re.compile(r"\b(suggest|recommend|find|search|looking?\s+for).*\b(research|paper|thesis|dissertation)\b", _I),
        re.compile(r"\b(research|paper|thesis|dissertation)\b.*(suggest|recommend|find|search|available)\b", _I),
    ],
    "recommendations": [
        re.compile(r"\b(recommend(?:ation)?s?|suggest(?:ion)?s?)\s+(?:a\s+)?book", _I),
        re.compile(r"\bbook\b.*\b(recommend(?:ation)?s?|suggest(?:ion)?s?)", _I),
        re.compile(r"\b(what\s+should\s+i\s+read|popular\s+book|trending\s+book)\b", _I),
    ],
    "penalties": [re.compile(r"\b(penalty|penalt(?:ies)|fine|late\s+fee|overdue)\b", _I)],
    "rules": [re.compile(r"\b(rules?|regulations?|polic(?:y|ies)|guidelines?)\b", _I)],
    "account": [re.compile(r"\b(account|profile|my\s+(?:book|borrow|transaction|history))\b", _I)],
    "faq": [re.compile(r"\b(faq|frequently\s+asked|common\s+question)\b", _I)],
}

# research_papers is checked ahead of everything else
INTENT_PRIORITY = (
    "research_papers",
    "greeting", "farewell", "thanks",
    "book_search", "book_availability",
    "recommendations",
    "borrow_info", "return_info", "penalties",
    "library_hours", "rules", "account", "faq", "help",
)

QUERY_STOPWORDS = frozenset({
    "a", "an", "the", "is", "are", "was", "were", "be", "been", "being",
    "have", "has", "had", "do", "does", "did", "can", "could", "will", "would",
    "should", "may", "might", "must", "for", "about", "find", "search",
    "looking", "look", "by", "called", "named", "please", "help", "me", "i",
    "want", "need", "where", "what", "when", "who", "how", "any", "some",
    "this", "that", "these", "those", "you", "got", "there",
    "suggest", "recommend", "recommendation",
})

_GENERIC_PAPER_QUERY = re.compile(r"^(research\s*paper|paper|research)$", _I)
_WANTS_RECOMMENDATIONS = re.compile(r"\b(suggest|recommend|recommendation)\b", _I)
_BOOK_INDICATORS = re.compile(r"\b(novel|fiction|story|biography|textbook|guide|manual|handbook)\b", _I)
_CAPITALIZED_WORDS = re.compile(r"[A-Z][a-z]+\s+[A-Z][a-z]+")

STATIC_RESPONSES = {
    "farewell": "Goodbye! Have a great day! 😊",
    "thanks": "You're welcome! Need anything else? 😊",
    "library_hours": (
        "📅 Library Hours\n\nRegular:\n• Mon-Fri: 8:00 AM - 6:00 PM\n• Saturday: 9:00 AM - 4:00 PM\n• Sunday: Closed\n\n"
        "Exam Period:\n• Mon-Fri: 8:00 AM - 8:00 PM\n\nHours may vary during holidays."
    ),
    "borrow_info": (
        "📖 How to Borrow\n\n1. Search for the book\n2. Check availability\n3. Visit the kiosk/desk\n4. Present your ID\n"
        "5. Complete checkout\n\nLoan Period:\n• Books: 7-14 days\n• Research: 3-7 days\n\nLimit: Up to 3 items\n\n"
        "Need help finding a book?"
    ),
    "return_info": (
        "📥 How to Return\n\n1. Visit kiosk or desk\n2. Scan your ID\n3. Place book in return slot\n4. Wait for confirmation\n\n"
        "Remember:\n✓ Return before due date\n✓ Check for damage\n✓ Keep your receipt\n\nQuestions about fees?"
    ),
    "penalties": (
        "⚠️ Fines & Penalties\n\nOverdue:\n• Books: ₱5/day\n• Research: ₱10/day\n• Max: ₱200 per item\n\n"
        "Lost/Damaged:\n• Replacement cost + fee\n\nPayment:\n• Library front desk\n• Keep receipt\n\n"
        "Unpaid fines = account restrictions\n\nCheck your account page for current fines."
    ),
    "account": (
        "👤 Your Account\n\nManage through the portal:\n• View borrowed books\n• Check due dates\n• Transaction history\n"
        "• Update info\n• View fines\n\nVisit your Profile page for details."
    ),
    "help": (
        "🔍 How can I help?\n\n📚 Books\n• Search & check availability\n• Get recommendations\n\n📄 Research Papers\n"
        "• Find academic papers\n\n🕐 Library Info\n• Hours & policies\n\n📖 Transactions\n• Borrow & return\n"
        "• Check penalties\n\nWhat do you need?"
    ),
    "default": (
        "Not sure what you need?\n\nI can help with:\n📚 Book search\n🕐 Hours\n📖 Borrowing\n📥 Returns\n"
        "💡 Recommendations\n\nPlease rephrase your question."
    ),
}

ERROR_MESSAGE = "I'm sorry, I encountered an error processing your request. Please try again or rephrase your question."


def identify_intent(message: str) -> str:
    for intent in INTENT_PRIORITY:
        if any(pattern.search(message) for pattern in INTENT_PATTERNS[intent]):
            return intent
    return "unknown"


def extract_entities(message: str) -> Dict[str, Optional[str]]:
    entities: Dict[str, Optional[str]] = {"book_title": None, "author_name": None}
    quoted = re.search(r"[\"']([^\"']+)[\"']", message)
    if quoted:
        entities["book_title"] = quoted.group(1)
    by_author = re.search(r"\bby\s+([A-Z][a-z]+(?:\s+[A-Z][a-z]+)*)", message, _I)
    if by_author:
        entities["author_name"] = by_author.group(1)
    return entities


def extract_search_query(message: str) -> str:
    cleaned = re.sub(r"[^\w\s]", " ", message.lower())
    words = [w for w in cleaned.split() if len(w) > 2 and w not in QUERY_STOPWORDS]
    return " ".join(words).strip()


def looks_like_book_search(message: str) -> bool:
    return bool(_BOOK_INDICATORS.search(message) or _CAPITALIZED_WORDS.search(message) or re.search(r"[\"']", message))


def _rating_line(item: Dict[str, Any]) -> Optional[str]:
    if item.get("average_rating") and item.get("rating_count"):
        return f"   ⭐ {float(item['average_rating']):.1f} ({item['rating_count']} reviews)"
    return None


def _status_icon(item: Dict[str, Any]) -> str:
    return "✅" if item.get("status") == "Available" else "❌"


class RuleBasedChatbot:
    def __init__(self, tool_executor: Optional[ToolExecutor] = None):
        self.tool_executor = tool_executor or execute_tool

    async def process_message(self, message: str, context: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Returns {success, message, intent, tool_used}."""
        context = context or {}
        try:
            intent = identify_intent(message)
            handler = getattr(self, f"_handle_{intent}", None)
            if handler is not None:
                response, tool_used = await handler(message, context)
            elif intent in STATIC_RESPONSES:
                response, tool_used = STATIC_RESPONSES[intent], None
            else:
                response, tool_used = await self._handle_unknown(message, context)
            return {"success": True, "message": response, "intent": intent, "tool_used": tool_used}
        except Exception as e:
            logger.error(f"[RuleBasedChatbot] Error processing message: {e}", exc_info=True)
            return {"success": False, "message": ERROR_MESSAGE, "error": str(e)}

    async def _handle_greeting(self, message: str, context: Dict[str, Any]) -> Tuple[str, None]:
        user_name = context.get("user_name") or "there"
        return (
            f"Hello {user_name}! 👋\n\nI can help you with:\n📚 Books & research papers\n🕐 Library hours\n"
            "📖 Borrowing & returns\n💡 Recommendations\n\nWhat do you need?",
            None,
        )

    async def _handle_book_search(self, message: str, context: Dict[str, Any]) -> Tuple[str, Optional[str]]:
        entities = extract_entities(message)
        query = entities["book_title"] or entities["author_name"] or extract_search_query(message)
        if not query or len(query) < 2:
            return "📚 Search for books\n\nTell me:\n• Book title\n• Author name\n• Keywords\n\nWhat book do you need?", None

        result = await self.tool_executor("search_books", {"query": query, "limit": 8})
        books = result.get("books") if result.get("success") else None
        if not books:
            return (
                f"I couldn't find \"{query}\" 😕\n\nDon't worry! Try:\n✓ Different spelling\n✓ Author's last name\n"
                "✓ Keywords or topics\n✓ Partial title\n\nThe search is smart and flexible!",
                None,
            )

        count = result.get("count", len(books))
        lines = [f"📚 Found {count} book{'s' if count > 1 else ''}:\n"]
        for index, book in enumerate(books, start=1):
            lines.append(f"{index}. {book.get('title')}")
            lines.append(f"   By: {book.get('author') or 'Unknown'}")
            if book.get("category"):
                lines.append(f"   📁 {book['category']}")
            if book.get("publication_year"):
                lines.append(f"   📅 {book['publication_year']}")
            rating = _rating_line(book)
            if rating:
                lines.append(rating)
            lines.append(f"   {_status_icon(book)} {book.get('availability_status')}\n")
        lines.append("💡 Tip: I found these using smart search that handles variations in spelling and punctuation!")
        return "\n".join(lines), "search_books"

    _handle_book_availability = _handle_book_search

    async def _handle_recommendations(self, message: str, context: Dict[str, Any]) -> Tuple[str, Optional[str]]:
        user_id = context.get("user_id")
        if user_id:
            tool_name, args = "recommend_books", {"user_id": user_id, "limit": 8}
        else:
            tool_name, args = "get_popular_books", {"type": "highest_rated", "limit": 8}
        result = await self.tool_executor(tool_name, args)
        books = (result.get("recommendations") or result.get("books")) if result.get("success") else None
        if not books:
            return (
                "💡 I can recommend books based on:\n\n• Your borrowing history\n• Popular titles\n• Highest-rated books\n"
                "• Recently added\n\nWhat would you like to see?",
                None,
            )

        lines = ["💡 Recommended for you:\n"]
        for index, book in enumerate(books, start=1):
            lines.append(f"{index}. {book.get('title') or book.get('book_title')}")
            lines.append(f"   By: {book.get('author') or 'Unknown'}")
            if book.get("category"):
                lines.append(f"   📁 {book['category']}")
            rating = _rating_line(book)
            if rating:
                lines.append(rating)
            lines.append(f"   {_status_icon(book)} {book.get('status') or book.get('availability_status')}\n")
        return "\n".join(lines), tool_name

    def _paper_lines(self, papers: List[Dict[str, Any]]) -> List[str]:
        lines = []
        for index, paper in enumerate(papers, start=1):
            lines.append(f"{index}. {paper.get('title')}")
            if paper.get("author"):
                lines.append(f"   By: {paper['author']}")
            if paper.get("publication_year"):
                lines.append(f"   📅 {paper['publication_year']}")
            if paper.get("category"):
                lines.append(f"   🏛️ {paper['category']}")
            lines.append(f"   {_status_icon(paper)} {paper.get('availability_status') or paper.get('status')}\n")
        return lines

    async def _handle_research_papers(self, message: str, context: Dict[str, Any]) -> Tuple[str, Optional[str]]:
        query = extract_search_query(message)
        wants_recommendations = bool(_WANTS_RECOMMENDATIONS.search(message))
        is_generic = bool(query) and bool(_GENERIC_PAPER_QUERY.match(query.strip()))
        logger.debug(f"[RuleBasedChatbot] Research intent - query: '{query}', wants recs: {wants_recommendations}, generic: {is_generic}")

        if wants_recommendations and (not query or len(query) < 3 or is_generic):
            result = await self.tool_executor("recommend_research_papers", {"user_id": context.get("user_id"), "limit": 8})
            papers = result.get("papers") if result.get("success") else None
            if not papers:
                return (
                    "📄 Research Paper Recommendations\n\nI can suggest papers based on:\n• Your department\n"
                    "• Your borrowing history\n• Recent publications\n• Popular papers\n\n"
                    "Tell me a topic or keyword to find relevant papers!",
                    None,
                )
            return "\n".join(["📄 Recommended Research Papers:\n", *self._paper_lines(papers)]), "recommend_research_papers"

        if not query or len(query) < 2 or is_generic:
            return "📄 Research Papers\n\nProvide:\n• Paper title\n• Author name\n• Keywords/topic\n• Department\n\nWhat are you researching?", None

        result = await self.tool_executor("search_research_papers", {"query": query, "limit": 8})
        papers = result.get("papers") if result.get("success") else None
        if not papers:
            return (
                f"No papers found for \"{query}\" 😕\n\nTry:\n✓ Different keywords\n✓ Author name\n✓ Department name\n"
                "✓ Broader terms\n\nSearch handles variations automatically!",
                None,
            )
        count = result.get("count", len(papers))
        lines = [f"📄 Found {count} research paper{'s' if count > 1 else ''}:\n", *self._paper_lines(papers)]
        lines.append("💡 Smart search found these matching your query!")
        return "\n".join(lines), "search_research_papers"

    async def _handle_rules(self, message: str, context: Dict[str, Any]) -> Tuple[str, Optional[str]]:
        faq_result = await self.tool_executor("get_faqs", {"category": "all"})
        faqs = faq_result.get("faqs") if faq_result.get("success") else None
        if faqs:
            lines = ["❓ Frequently Asked Questions:\n"]
            for faq in faqs[:5]:
                lines.append(f"Q: {faq.get('question')}")
                lines.append(f"A: {faq.get('answer')}\n")
            if len(faqs) > 5:
                lines.append(f"...{len(faqs) - 5} more available")
            return "\n".join(lines), "get_faqs"

        rules_result = await self.tool_executor("get_library_rules", {})
        rules = rules_result.get("rules") if rules_result.get("success") else None
        if rules:
            lines = ["📋 Library Rules:\n"]
            for index, rule in enumerate(rules[:5], start=1):
                lines.append(f"{index}. {rule.get('rule_title')}")
                lines.append(f"{rule.get('rule_description')}\n")
            return "\n".join(lines), "get_library_rules"
        return "For library rules and FAQs, please visit the Help section or contact the library desk.", None

    _handle_faq = _handle_rules

    async def _handle_unknown(self, message: str, context: Dict[str, Any]) -> Tuple[str, Optional[str]]:
        if len(message) > 5 and looks_like_book_search(message):
            result = await self.tool_executor("search_books", {"query": extract_search_query(message), "limit": 5})
            books = result.get("books") if result.get("success") else None
            if books:
                lines = ["📚 Found:\n"]
                for index, book in enumerate(books[:3], start=1):
                    lines.append(f"{index}. {book.get('title')}")
                    lines.append(f"   By: {book.get('author') or 'Unknown'}")
                    lines.append(f"   {'✅ Available' if book.get('status') == 'Available' else '❌ Not Available'}\n")
                return "\n".join(lines), "search_books"
        return STATIC_RESPONSES["default"], None
