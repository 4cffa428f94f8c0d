from rest_framework import serializers


class CheckoutStartSerializer(serializers.Serializer):
    success_url = serializers.URLField(max_length=2048)
    cancel_url = serializers.URLField(max_length=2048)


class CheckoutStatusQuerySerializer(serializers.Serializer):
    sessionId = serializers.CharField(required=False, allow_blank=True, default="")  # noqa: N815
    orderId = serializers.CharField(required=False, allow_blank=True, default="")  # noqa: N815

    def validate(self, attrs):
        if not attrs.get("sessionId") and not attrs.get("orderId"):
            msg = "sessionId or orderId is required."
            raise serializers.ValidationError(msg)
        return attrs
