"""Wallet activity aggregation, cohort retention, adoption funnel and productivity scoring."""
