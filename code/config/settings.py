"""
PuzzleGuard Configuration Settings
反作弊 / 信任与安全子系统配置
"""
import os

# =============================================================================
# Database Configuration
# =============================================================================
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./puzzleguard.db")
SQL_ECHO = os.getenv("SQL_ECHO", "false").lower() == "true"
# memory | sql
STORE_BACKEND = os.getenv("STORE_BACKEND", "memory").lower()

# =============================================================================
# Server Configuration
# =============================================================================
API_HOST = os.getenv("API_HOST", "0.0.0.0")
API_PORT = int(os.getenv("API_PORT", "8000"))

# =============================================================================
# Logging Configuration
# =============================================================================
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Serialized records carry this version so older rows stay readable
RECORD_SCHEMA_VERSION = 1

# =============================================================================
# Detection Engine
# =============================================================================
DETECTION_CONFIG = {
    # timing (ms)
    "min_move_time_ms": 50,
    "superhuman_threshold_ms": 100,
    "superhuman_ratio": 0.1,
    "consistency_cv_threshold": 0.05,
    "z_score_threshold": 3.0,
    "min_baseline_samples": 10,
    "thinking_pause_ms": 3000,
    "long_pause_ms": 5000,
    # movement
    "perfect_efficiency_threshold": 0.98,
    "optimality_threshold": 0.98,
    "pattern_repetition_limit": 3,
    # behavior
    "automation_threshold": 0.8,
    "automation_consistency": 0.95,
    "improvement_threshold": 0.9,
    "skill_deviation_threshold": 0.7,
    # severity / confidence
    "critical_confidence": 0.9,
    "high_confidence": 0.7,
    "medium_confidence": 0.4,
    "high_flag_count": 3,
    "flag_threshold": 0.3,
}

KNOWN_BOT_SIGNATURES = [
    s for s in os.getenv("KNOWN_BOT_SIGNATURES", "").split(",") if s
]

# =============================================================================
# Case Manager
# =============================================================================
REVIEW_CONFIG = {
    "max_cases_per_reviewer": int(os.getenv("MAX_CASES_PER_REVIEWER", "20")),
    "required_confidence": 0.8,
    "additional_review_confidence": 0.7,
    "min_reasoning_length": 10,
    "max_reviews": 3,
    "escalation_timeout_hours": {"critical": 12, "default": 48},
    "deadline_hours": {"urgent": 4, "high": 12, "medium": 24, "low": 72},
    "appeal_window_days": 7,
    "default_ban_duration": "30d",
    "default_invalidation_scope": "session",
    "suspicious_monitoring_days": 30,
    "inconclusive_watch_days": 14,
}

# =============================================================================
# Appeal Manager
# =============================================================================
APPEAL_CONFIG = {
    "appeal_window_days": int(os.getenv("APPEAL_WINDOW_DAYS", "7")),
    "max_appeals_per_user": int(os.getenv("MAX_APPEALS_PER_USER", "3")),
    "appeal_count_period_days": 365,
    "auto_approval_threshold": 0.9,
    "expert_review_threshold": 0.7,
    "min_reason_length": 50,
    "appeal_fee": float(os.getenv("APPEAL_FEE", "0")),
    "waive_appeal_fees": os.getenv("WAIVE_APPEAL_FEES", "true").lower() == "true",
    "max_reviewer_appeals": 10,
    "review_time_limit_days": 5,
    "min_review_seconds": 300,
    "min_original_reasoning_length": 100,
}

# =============================================================================
# Community Moderation
# =============================================================================
MODERATION_CONFIG = {
    "report_voting_threshold": 3,
    "auto_action_threshold": 5,
    "auto_action_window_hours": 24,
    "auto_restriction_duration": "1d",
    "max_reports_per_user": 5,
    "consensus_threshold": 0.6,
    "reputation_thresholds": {
        "can_report": 10,
        "can_vote": 25,
        "can_moderate": 100,
        "can_escalate": 250,
    },
    "abuse_score_limit": 0.8,
    "false_report_penalty": -10,
    "accurate_report_reward": 5,
    "min_description_length": 20,
    "max_description_length": 2000,
    "max_screenshots": 10,
    "video_hosts": ["youtube.com", "youtu.be", "vimeo.com", "twitch.tv"],
    "max_reports_per_moderator": 15,
    "suspicious_monitoring_days": 30,
}

# 未接入外部信誉系统时新用户的默认信誉
DEFAULT_REPUTATION = float(os.getenv("DEFAULT_REPUTATION", "50"))
