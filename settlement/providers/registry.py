from settlement.errors import UnknownProvider
from settlement.providers.alipay import AlipayAdapter
from settlement.providers.base import ProviderAdapter
from settlement.providers.stripe_service import StripeAdapter
from settlement.providers.wechat import WechatAdapter

ADAPTERS = {
    AlipayAdapter.name: AlipayAdapter,
    WechatAdapter.name: WechatAdapter,
    StripeAdapter.name: StripeAdapter,
}


def get_adapter(provider: str) -> ProviderAdapter:
    """Adapter for the provider named in the webhook route, built with current keys."""
    try:
        return ADAPTERS[provider]()
    except KeyError:
        raise UnknownProvider(f"Unknown payment provider: {provider}") from None
