EXAM_STATUSES = ("Scheduled", "In Progress", "Completed", "Cancelled", "Postponed")
SCANNABLE_STATUSES = frozenset({"Scheduled", "In Progress"})

# (current, target) pairs an assigned invigilator may perform.
INVIGILATOR_TRANSITIONS = frozenset({
    ("Scheduled", "In Progress"),
    ("In Progress", "Completed"),
})


class ExamStatusError(Exception):
    def __init__(self, status_code: int, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.message = message


def check_status_transition(current: str, target: str, *, role: str, is_assigned: bool) -> None:
    """
    Raise ExamStatusError unless the actor may move the exam to `target`.

    Admins may set any valid status. Invigilators must be assigned to the
    exam and may only start a scheduled exam or complete a running one.
    """
    if target not in EXAM_STATUSES:
        raise ExamStatusError(400, f"Invalid status. Valid statuses: {', '.join(EXAM_STATUSES)}.")

    if role == "admin":
        return

    if role != "invigilator":
        raise ExamStatusError(403, "You are not allowed to change exam status.")
    if not is_assigned:
        raise ExamStatusError(403, "Access denied. You are not assigned to this exam.")
    if target not in {"In Progress", "Completed"}:
        raise ExamStatusError(403, "You can only start or complete exams.")
    if (current, target) not in INVIGILATOR_TRANSITIONS:
        raise ExamStatusError(409, f"Cannot move exam from {current} to {target}.")


def is_scannable(status: str) -> bool:
    return status in SCANNABLE_STATUSES
