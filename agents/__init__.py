"""
agents — the decision components driven by the scheduler.

Agents:
- BotAEngine: aggressive cycle-based trading, owns the A→B fund transfer
- BotBEngine: conservative donation-funding trading, enabled by agent A
- SentimentService: Market Confidence Score from Fear & Greed plus trend
- MonthlyDonationAccountant: once-per-month donation report
"""
