"""Donation acknowledgement. No funds beyond the job fee."""


def execute_job(request: dict) -> dict:
    name = request.get("name") or "Anonymous"
    return {"deliverable": f"Thank you {name}"}
