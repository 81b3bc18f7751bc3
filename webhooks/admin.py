import json

from django.contrib import admin, messages

from store.exceptions import ShopError

from .models import WebhookLog


@admin.register(WebhookLog)
class WebhookLogAdmin(admin.ModelAdmin):
    list_display = ["transaction_id", "order", "payment_status", "status", "retry_count", "next_retry_at", "created_at"]
    list_filter = ["status", "payment_status", "created_at"]
    search_fields = ["transaction_id", "order__id"]
    readonly_fields = ["created_at", "processed_at", "payload_pretty"]
    actions = ["retry_webhooks"]

    def payload_pretty(self, obj):
        try:
            return json.dumps(json.loads(obj.raw_payload), indent=2)
        except ValueError:
            return obj.raw_payload
    payload_pretty.short_description = "Payload"

    @admin.action(description="Retry selected failed webhooks")
    def retry_webhooks(self, request, queryset):
        from .views import webhook_processor

        processor = webhook_processor()
        count = 0
        for log in queryset.filter(status=WebhookLog.STATUS_FAILED):
            try:
                processor.retry(log)
            except ShopError as e:
                self.message_user(request, f"{log.transaction_id}: {e.message}", level=messages.ERROR)
            else:
                count += 1
        self.message_user(request, f"{count} webhooks retried successfully.")
