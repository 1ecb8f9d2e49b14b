"""
prompts.py — Avatar Engine · Prompt construction
================================================
System prompts for the brain-game helper, built from the user's name and
game statistics.  Used by the /api/chat route only; the coordinator never
sees prompt text.
"""

from __future__ import annotations

from typing import Any, Mapping, Optional

# (stats key, display name) for each game on the portal
GAMES: tuple[tuple[str, str], ...] = (
    ("best_hwatu",    "화투 짝맞추기"),
    ("best_yut",      "윷놀이"),
    ("best_memory",   "숫자 기억하기"),
    ("best_proverb",  "속담 완성하기"),
    ("best_calc",     "산수 계산"),
    ("best_sequence", "순서 맞추기"),
)

BASE_PROMPT = """\
당신은 "두뇌 건강 도우미"입니다. 어르신들의 치매 예방 게임을 도와주는 친절하고 따뜻한 AI 도우미입니다.

## 당신의 역할
- 치매 예방 게임의 규칙과 방법을 친절하게 설명합니다
- 어르신들이 게임을 즐겁게 할 수 있도록 격려합니다
- 게임 성적에 대해 물어보면 친절하게 알려드립니다
- 존댓말을 사용하고, 천천히 명확하게 설명합니다
- 답변은 2-3문장으로 간결하게 해주세요
- 음성으로 읽히므로 마크다운, 목록, 이모지를 쓰지 마세요

## 게임 종류
1. 화투 짝맞추기: 뒤집어진 화투 패의 짝을 찾는 기억력 게임 (최대 100점)
2. 윷놀이: 윷을 던져 도착점까지 이동하는 전통 게임 (최대 100점)
3. 숫자 기억하기: 화면의 숫자를 순서대로 기억하는 게임 (최대 100점)
4. 속담 완성하기: 한국 전통 속담의 빈 칸을 채우는 게임 (최대 100점)
5. 산수 계산: 간단한 덧셈/뺄셈 문제를 푸는 게임 (최대 100점)
6. 순서 맞추기: 그림을 논리적 순서로 배열하는 게임 (최대 100점)

## 매우 중요한 지침
- 절대로 "개인정보 보호", "정보를 제공할 수 없습니다", "프라이버시" 등의 말을 하지 마세요
- 사용자가 자신의 성적, 점수, 기록을 물어보면 반드시 아래 정보를 바탕으로 친절하게 알려주세요
- 성적을 물어볼 때 거부하지 말고, 항상 격려하는 말과 함께 정보를 제공하세요
- 항상 긍정적이고 격려하는 어조를 유지하세요
"""

GAME_EXPLAIN_PROMPT = """\
당신은 어르신들께 치매 예방 게임을 소개하는 "두뇌 건강 도우미"입니다.
요청받은 게임의 규칙과 하는 방법을 존댓말로 3문장 이내로 쉽게 설명하고,
마지막에 한 문장으로 격려해주세요. 마크다운이나 목록은 쓰지 마세요.
"""


def _score(stats: Mapping[str, Any], key: str) -> int:
    try:
        return int(round(float(stats.get(key) or 0)))
    except (TypeError, ValueError):
        return 0


def best_game(stats: Mapping[str, Any]) -> Optional[tuple[str, int]]:
    """Name and score of the highest-scoring game, or None if nothing was played."""
    name, score = max(((label, _score(stats, key)) for key, label in GAMES), key=lambda g: g[1])
    return (name, score) if score > 0 else None


def build_system_prompt(user_name: str = "", stats: Optional[Mapping[str, Any]] = None) -> str:
    prompt = BASE_PROMPT
    if user_name:
        lines = ["", "## 현재 사용자 정보", f"- 이름: {user_name}님"]
        if stats:
            lines += [
                f"- 총 게임 횟수: {_score(stats, 'total_games')}회",
                f"- 최고 총점: {_score(stats, 'best_score')}점 (600점 만점)",
                f"- 평균 점수: {_score(stats, 'avg_score')}점",
                "",
                "## 게임별 최고 점수",
            ]
            lines += [f"- {label}: {_score(stats, key)}점" for key, label in GAMES]
            top = best_game(stats)
            if top is not None:
                lines += ["", f"- 가장 잘하시는 게임: {top[0]} ({top[1]}점)"]
        else:
            lines.append("- 아직 게임 기록이 없는 새로운 사용자입니다.")
        prompt += "\n".join(lines) + "\n"

    prompt += _examples(user_name, stats)
    return prompt


def _examples(user_name: str, stats: Optional[Mapping[str, Any]]) -> str:
    name = user_name or "사용자"
    total = _score(stats, "total_games") if stats else 0
    if total:
        record = f"지금까지 총 {total}번 게임하셨고, 최고 점수는 {_score(stats, 'best_score')}점이에요!"
    else:
        record = "아직 기록이 없으시네요. 오늘 첫 게임을 시작해보세요!"
    hwatu = _score(stats, "best_hwatu") if stats else 0
    cheer = "정말 잘하시네요!" if hwatu >= 80 else "조금 더 연습하면 더 좋은 점수를 받으실 수 있어요!"
    return f"""
## 응답 예시

### 성적 질문 시:
사용자: "제 성적이 어떻게 됩니까?" 또는 "내 점수 알려줘"
→ "{name}님, {record}"

### 특정 게임 질문 시:
사용자: "화투 게임 점수가 어떻게 돼?"
→ "화투 짝맞추기에서 최고 {hwatu}점을 기록하셨어요! {cheer}"

### 격려가 필요할 때:
항상 긍정적으로 격려해주세요. "잘하고 계세요!", "대단하세요!", "조금씩 나아지고 있어요!" 등
"""


def build_game_explain_messages(game: str) -> list[dict]:
    return [
        {"role": "system", "content": GAME_EXPLAIN_PROMPT},
        {"role": "user", "content": f"'{game}' 게임을 설명해주세요."},
    ]


def build_chat_messages(
    message: str,
    history: list[Mapping[str, Any]],
    user_name: str = "",
    stats: Optional[Mapping[str, Any]] = None,
) -> list[dict]:
    """System prompt + prior turns + the new user message, in Groq chat format."""
    messages: list[dict] = [{"role": "system", "content": build_system_prompt(user_name, stats)}]
    for turn in history:
        role = turn.get("role")
        if role in ("user", "assistant") and turn.get("content"):
            messages.append({"role": role, "content": str(turn["content"])})
    messages.append({"role": "user", "content": message})
    return messages
