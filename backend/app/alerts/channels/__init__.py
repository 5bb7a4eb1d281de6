"""
channels — Per-channel delivery backends.

Each channel module exposes a transport client plus a ``Channel`` subclass:
    sms_gateway   — TwilioSmsClient / SmsChannel
    email_alert   — SmtpEmailClient / EmailChannel
    web_push      — FcmPushClient / PushChannel
    webhook       — WebhookClient / WebhookChannel (emergency services)

Channels send one message and raise ChannelSendError on failure.
Fan-out, timeouts and the audit trail live in the dispatcher.
"""
