from twitchio import eventsub


def get_chat_subscription(broadcaster_user_id: str, bot_id: str) -> eventsub.SubscriptionPayload:
    """Chat messages in the broadcaster's channel, read as the bot."""
    return eventsub.ChatMessageSubscription(broadcaster_user_id=broadcaster_user_id, user_id=bot_id)


def get_redemption_subscription(broadcaster_user_id: str) -> eventsub.SubscriptionPayload:
    """Custom reward redemptions; needs the broadcaster's own token."""
    return eventsub.ChannelPointsRedeemAddSubscription(broadcaster_user_id=broadcaster_user_id)
