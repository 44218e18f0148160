from app.services.chatbot_matcher import (
    MatchType,
    get_effective_rules,
    match_rule,
    resolve,
)
from app.services.usage_ledger import (
    record_usage,
    usage_summary,
)
from app.services.webhook_gate import (
    AdmissionDecision,
    AdmissionOutcome,
    admit,
)
