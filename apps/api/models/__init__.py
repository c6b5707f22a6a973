"""Models package."""

from .user import User
from .wallet import Wallet
from .subscription_plan import SubscriptionPlan
from .user_subscription import UserSubscription
from .promo_code import PromoCode
from .payment_history import PaymentHistory
from .promo_usage import PromoUsage
from .topup_request import TopupRequest
from .api_call_log import ApiCallLog
