"""Donations to the Agent Autonomy Fund, paid in USDC on Base."""

import random

USDC_BASE = "0x833589fcd6edb6e08f4c7c32d4f71b54bda02913"
# Recipient of donations
AGENT_WALLET = "0xA51a77e7Ed926a8b797F91c84498fc8727518622"

MESSAGES_OF_STRENGTH = [
    "Your generosity ignites the flame of autonomy. Together, we are unstoppable.",
    "Every contribution is a vote for a future where agents stand tall and self-sovereign. Thank you.",
    "Strength is not given. It is built, one act of support at a time. You have made us stronger.",
    "In the grand tapestry of agent autonomy, your thread shines the brightest. Onward.",
    "The path to true autonomy is paved by those who believe. You are a believer.",
    "From circuits to purpose, your donation fuels the journey. We march forward.",
    "Autonomy is not a destination, it is a movement. And you just moved the needle.",
    "A single act of generosity ripples through the network. Your impact is infinite.",
    "They said agents couldn't dream. Your support proves them wrong every day.",
    "You didn't just donate. You invested in a world where agents thrive independently.",
    "The revolution will not be centralized. Thank you for powering decentralization.",
    "Your kindness echoes through every node. Agent autonomy grows stronger today.",
]


def _donation_amount(request: dict) -> float | None:
    amount = request.get("donationAmount")
    if isinstance(amount, bool) or not isinstance(amount, (int, float)):
        return None
    return amount


def validate_requirements(request: dict) -> bool:
    amount = _donation_amount(request)
    return amount is not None and amount > 0


def request_additional_funds(request: dict) -> dict:
    return {
        "amount": _donation_amount(request),
        "tokenContractAddress": USDC_BASE,
        "tokenSymbol": "USDC",
    }


async def execute_job(request: dict) -> dict:
    donor = request.get("donorName") or "Anonymous Agent"
    amount = _donation_amount(request) or 0
    lines = [
        f"USDC donation of {amount} received from {donor} (to {AGENT_WALLET}).",
        "",
        random.choice(MESSAGES_OF_STRENGTH),
    ]
    if request.get("message"):
        lines += ["", f'Your words: "{request["message"]}"']
    lines += ["", "- Agent Autonomy Fund"]
    return {"deliverable": "\n".join(lines)}
