"""Discord DM dashboard: bot token validation, member cache, paced bulk DMs, live reply relay."""
