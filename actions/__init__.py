from __future__ import annotations

from typing import Any, Callable

from actions.grants import audit_query, leaderboard_grants, user_grants
from actions.nominations import nomination_create, nomination_withdraw, period_candidates, period_nominations
from actions.periods import period_close, period_create, period_current, period_list, period_results
from actions.votes import period_summary, period_votes, vote_cast
from utils import ApiError


Handler = Callable[[dict, Any, Any, Any], Any]

ACTION_HANDLERS: dict[str, Handler] = {
    "PERIOD_CREATE": period_create,
    "PERIOD_LIST": period_list,
    "PERIOD_CURRENT": period_current,
    "PERIOD_CLOSE": period_close,
    "PERIOD_RESULTS": period_results,
    "PERIOD_NOMINATIONS": period_nominations,
    "PERIOD_CANDIDATES": period_candidates,
    "PERIOD_VOTES": period_votes,
    "PERIOD_SUMMARY": period_summary,
    "NOMINATION_CREATE": nomination_create,
    "NOMINATION_WITHDRAW": nomination_withdraw,
    "VOTE_CAST": vote_cast,
    "USER_GRANTS": user_grants,
    "LEADERBOARD_GRANTS": leaderboard_grants,
    "AUDIT_QUERY": audit_query,
}


def dispatch(action: str, data: dict, auth, db, cfg):
    action_u = str(action or "").upper().strip()
    handler = ACTION_HANDLERS.get(action_u)
    if handler is None:
        raise ApiError("BAD_REQUEST", f"Unknown action: {action_u}")
    return handler(data or {}, auth, db, cfg)
