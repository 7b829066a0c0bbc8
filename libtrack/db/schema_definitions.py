"""
Expected layout of the library database.

The library tables are owned by the wider LibTrack deployment; this service only reads and
writes them through parameterized SQL. On startup the definitions below are compared with
the live catalog so that a drifted schema shows up in the logs instead of as a failing query.
Tables owned by this service (scheduler bookkeeping) are declared as ORM models instead.
"""

SCHEMA_DEFINITIONS = {
    "library": {
        "description": "University library catalog, circulation and administration data.",
        "tables": {
            "books": {
                "description": "One row per physical copy. Copies of a title share a batch_registration_key.",
                "columns": [
                    "book_id", "book_title", "book_number", "batch_registration_key", "status",
                    "book_author_id", "book_publisher_id", "book_genre_id", "is_using_department",
                    "book_shelf_loc_id", "book_year", "book_edition", "book_price", "book_cover",
                    "book_qr", "book_donor", "created_at", "updated_at",
                ],
            },
            "book_author": {"description": "Author names.", "columns": ["book_author_id", "book_author"]},
            "book_publisher": {"description": "Publisher names.", "columns": ["book_publisher_id", "publisher"]},
            "book_genre": {"description": "Genres.", "columns": ["book_genre_id", "book_genre"]},
            "departments": {
                "description": "Academic departments, also used as a book classification.",
                "columns": ["department_id", "department_name", "department_acronym"],
            },
            "research_papers": {
                "description": "Single-copy research papers.",
                "columns": [
                    "research_paper_id", "research_title", "research_abstract", "year_publication",
                    "department_id", "status", "research_paper_price", "research_paper_qr", "book_shelf_loc_id",
                    "created_at", "updated_at",
                ],
            },
            "research_author": {
                "description": "Authors of a research paper, one row per author.",
                "columns": ["research_author_id", "research_paper_id", "author_name"],
            },
            "transactions": {
                "description": "Borrow/return/reserve events.",
                "columns": [
                    "transaction_id", "reference_number", "transaction_type", "user_id", "book_id",
                    "research_paper_id", "transaction_date", "due_date", "return_date", "status",
                    "receipt_image",
                ],
            },
            "penalties": {
                "description": "Fines per (transaction, borrower).",
                "columns": [
                    "penalty_id", "transaction_id", "user_id", "fine", "status", "penalty_type",
                    "book_price", "waive_reason", "waived_by", "updated_at",
                ],
            },
            "users": {
                "description": "Borrowers (students and faculty).",
                "columns": [
                    "user_id", "first_name", "last_name", "email", "position", "department_id",
                    "year_level", "restriction",
                ],
            },
            "administrators": {
                "description": "Admin accounts for the management console.",
                "columns": [
                    "admin_id", "first_name", "last_name", "email", "password_hash", "role", "status",
                    "created_at", "last_login", "perm_dashboard", "perm_manage_books",
                    "perm_book_reservations", "perm_manage_registrations", "perm_book_transactions",
                    "perm_manage_penalties", "perm_activity_logs", "perm_settings",
                    "perm_manage_administrators",
                ],
            },
            "reservations": {
                "description": "Hold requests on a book copy or a research paper.",
                "columns": [
                    "reservation_id", "user_id", "book_id", "research_paper_id", "status", "reason",
                    "created_at", "updated_at",
                ],
            },
            "book_shelf_location": {
                "description": "Shelf grid cells.",
                "columns": ["book_shelf_loc_id", "shelf_number", "shelf_column", "shelf_row"],
            },
            "system_settings": {
                "description": "Single-row fine configuration.",
                "columns": ["student_daily_fine", "faculty_daily_fine", "student_borrow_days", "faculty_borrow_days"],
            },
            "rule_headers": {"description": "Rule group headings.", "columns": ["id", "title", "created_at"]},
            "rules": {
                "description": "Rules grouped under a heading.",
                "columns": ["id", "header_id", "title", "description", "sort_order", "created_at"],
            },
            "faqs": {
                "description": "FAQ entries, managed by admins and served by the chatbot.",
                "columns": [
                    "id", "question", "answer", "category", "sort_order", "is_active", "created_by",
                    "created_at", "updated_at",
                ],
            },
            "ratings": {"description": "Star ratings per book.", "columns": ["rating_id", "book_id", "user_id", "star_rating"]},
            "activity_logs": {
                "description": "Audit trail.",
                "columns": ["activity_log_id", "user_id", "action", "details", "status", "created_at"],
            },
            "user_notifications": {
                "description": "Push notifications shown in the borrower app.",
                "columns": [
                    "notification_id", "user_id", "notification_type", "title", "message", "priority",
                    "related_transaction_id", "is_read", "created_at",
                ],
            },
        },
    },
}
