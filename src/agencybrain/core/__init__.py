"""Core business logic for the agency admin backend.

Modules:
- staff_access: Staff logins, access grants, team member links
- training_content: Category / module / lesson / quiz tree
- training_assignments: Module assignments and due dates
- training_progress: Lesson completion, quiz grading, progress report
- challenge: The six-week Challenge product
- call_repository: Scoring templates and agency calls
- call_analysis: LLM scoring of call transcripts
"""

__all__ = [
    "staff_access",
    "training_content",
    "training_assignments",
    "training_progress",
    "challenge",
    "call_repository",
    "call_analysis",
]
