# notifier/__init__.py

"""
Notification service: consumes notification events from Kafka and delivers
them by email.
"""
