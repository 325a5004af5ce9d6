"""
AI trade coach: narrative feedback on closed trades using Gemini.
"""
import logging
import re

import google.generativeai as genai

import config
import positions

logger = logging.getLogger(__name__)

SECTION_HEADERS = r"(Performance Analysis|What Worked Well|Improvement Areas|Areas to Improve|Trade Execution|Risk Management|Strategy Alignment)"

SYSTEM_INSTRUCTION = (
    "You are an experienced trading coach analyzing trade performance. "
    "Provide direct feedback without labels or prefixes. Each point should:\n"
    "1. Start directly with the analysis (no 'Point 1:', 'Analysis:', etc.)\n"
    "2. Be a complete, actionable insight\n"
    "3. Focus on specific behaviors and decisions\n"
    "4. Be based on the trade data provided\n\n"
    "Format each point as a clean bullet point without any prefixes or labels."
)


class FeedbackError(Exception):
    """AI feedback could not be produced"""


def init_gemini():
    """Initialize the Gemini API client."""
    if not config.GEMINI_API_KEY:
        logger.warning("[Market Brain] GEMINI_API_KEY not found in environment.")
        return False
    genai.configure(api_key=config.GEMINI_API_KEY)
    return True


def build_trade_prompt(trade) -> str:
    if not trade.entry_price or not trade.exit_price:
        raise FeedbackError("Trade must have both entry and exit prices")

    qty = positions.total_exited(trade.exits) or trade.quantity
    entry_total = trade.entry_price * qty
    pnl = positions.realized_pnl(trade)
    pnl_pct = pnl / entry_total * 100 if entry_total else 0

    rr = positions.risk_reward_ratio(trade)
    risk_pct = positions.r_multiple_risk_percent(trade)
    sign = '+' if pnl >= 0 else '-'

    return f"""As an expert trading coach, analyze this {trade.direction} trade on {trade.symbol}:

Key Metrics:
- P/L: {sign}${abs(pnl):.2f} ({pnl_pct:.2f}%)
- Entry Price: ${trade.entry_price}
- Exit Price: ${trade.exit_price:.2f}
- Stop Loss: {'$' + str(trade.stop_loss) if trade.stop_loss else 'Not set'}
- Take Profit: {'$' + str(trade.take_profit) if trade.take_profit else 'Not set'}
- Risk/Reward: {f'{rr:.2f}' if rr is not None else 'Not set'}
- Risk %: {f'{risk_pct:.2f}%' if risk_pct is not None else 'Not set'}
- Strategy: {trade.strategy or 'Not specified'}
- Market Conditions: {trade.market_conditions or 'Not specified'}
- Trade Setup: {trade.trade_setup or 'Not specified'}
- Emotional State: {trade.emotional_state or 'Not specified'}
- Exit Trigger: {trade.exit_trigger or 'Not specified'}

Provide exactly 3 points for each section. Start each point directly with the analysis, no prefixes or labels:

Performance Analysis:
• First point about execution
• Second point about risk
• Third point about strategy

What Worked Well:
• First strength point
• Second strength point
• Third strength point

Areas to Improve:
• First improvement point
• Second improvement point
• Third improvement point

Keep each point:
- Clear and actionable
- Focused on specific trading behaviors
- Based on the actual trade metrics
- Without any labels or prefixes"""


def _clean_section(text: str) -> str:
    lines = []
    for line in text.splitlines():
        line = line.strip()
        line = re.sub(r"^[•\-\*]\s*", "", line)
        line = re.sub(r"^\d+[.)]\s*", "", line)
        line = re.sub(rf"^{SECTION_HEADERS}\s*:?\s*", "", line, flags=re.IGNORECASE)
        line = re.sub(r"^([A-Za-z]+\s)?(Analysis|Management|Alignment|Decisions):\s*", "", line, flags=re.IGNORECASE)
        line = line.strip()
        if line and not re.fullmatch(SECTION_HEADERS, line, flags=re.IGNORECASE):
            lines.append(line)
    return "\n".join(lines)


def parse_feedback(content: str) -> dict:
    """Split model output into performance / lessons / mistakes sections."""
    sections = [s for s in re.split(r"\r?\n\s*\r?\n", content.strip()) if _clean_section(s)]
    cleaned = [_clean_section(s) for s in sections]
    cleaned += [""] * (3 - len(cleaned))
    return {
        "performance": cleaned[0],
        "lessons": cleaned[1],
        "mistakes": "\n".join(c for c in cleaned[2:] if c),
    }


def generate_trade_feedback(trade) -> dict:
    """
    Ask the model for coaching on a closed trade.
    Returns {'performance', 'lessons', 'mistakes'}.
    """
    prompt = build_trade_prompt(trade)

    if not init_gemini():
        raise FeedbackError("AI feedback is not configured (missing GEMINI_API_KEY)")

    try:
        model = genai.GenerativeModel(config.GEMINI_MODEL, system_instruction=SYSTEM_INSTRUCTION)
        response = model.generate_content(
            prompt,
            generation_config={"temperature": 0.7, "max_output_tokens": 500},
        )
        content = response.text
    except Exception as e:
        logger.error(f"[Market Brain] Generation error for trade {trade.id}: {e}")
        raise FeedbackError("Failed to generate trade feedback") from e

    return parse_feedback(content)


REFINE_INSTRUCTION = (
    "You are a trading coach. Keep responses extremely concise and actionable. "
    "No explanations, just clear directives."
)

REFINE_PROMPTS = {
    "performance": "Extract 3 key performance insights as brief bullet points (max 10 words each):",
    "lessons": "Summarize these trading lessons into 3 brief, actionable bullet points (max 10 words each):",
    "mistakes": "List 3 critical areas for improvement as brief bullet points (max 10 words each):",
}


def refine_points(points, kind: str) -> list:
    """Condense feedback gathered across many trades into at most 3 points."""
    if kind not in REFINE_PROMPTS:
        raise ValueError(f"Unknown feedback section: {kind}")
    if not points:
        return []
    if not init_gemini():
        raise FeedbackError("AI feedback is not configured (missing GEMINI_API_KEY)")

    prompt = REFINE_PROMPTS[kind] + "\n" + "\n".join(points)
    try:
        model = genai.GenerativeModel(config.GEMINI_MODEL, system_instruction=REFINE_INSTRUCTION)
        response = model.generate_content(prompt, generation_config={"temperature": 0.3, "max_output_tokens": 200})
        content = response.text
    except Exception as e:
        logger.error(f"[Market Brain] Refine error ({kind}): {e}")
        raise FeedbackError("Failed to refine trade feedback") from e

    refined = [line for line in _clean_section(content).splitlines() if line][:3]
    # Model returned nothing usable: keep the lead-in of the first points
    return refined or [p.split(':')[0].strip() for p in points[:3]]
