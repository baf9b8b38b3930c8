"""Billing domain schemas - M-Pesa STK callback envelope"""

from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class MpesaCallbackItem(BaseModel):
    name: str = Field(alias="Name")
    value: Optional[Union[int, float, str]] = Field(default=None, alias="Value")


class MpesaCallbackMetadata(BaseModel):
    items: list[MpesaCallbackItem] = Field(default_factory=list, alias="Item")


class MpesaStkCallback(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    merchant_request_id: Optional[str] = Field(default=None, alias="MerchantRequestID")
    checkout_request_id: Optional[str] = Field(default=None, alias="CheckoutRequestID")
    result_code: int = Field(alias="ResultCode")
    result_desc: str = Field(default="", alias="ResultDesc")
    callback_metadata: Optional[MpesaCallbackMetadata] = Field(default=None, alias="CallbackMetadata")

    def metadata_value(self, name: str):
        if self.callback_metadata is None:
            return None
        for item in self.callback_metadata.items:
            if item.name == name:
                return item.value
        return None

    def amount(self, divisor: float) -> Optional[float]:
        """Amount in KSH; the provider value is divided by `divisor`"""
        raw = self.metadata_value("Amount")
        if raw is None:
            return None
        try:
            return float(raw) / divisor
        except (TypeError, ValueError):
            return None

    @property
    def receipt_number(self) -> Optional[str]:
        value = self.metadata_value("MpesaReceiptNumber")
        return str(value) if value is not None else None

    @property
    def transaction_date(self) -> Optional[str]:
        value = self.metadata_value("TransactionDate")
        return str(value) if value is not None else None

    @property
    def phone_number(self) -> Optional[str]:
        value = self.metadata_value("PhoneNumber")
        return str(value) if value is not None else None


class MpesaCallbackBody(BaseModel):
    stk_callback: MpesaStkCallback = Field(alias="stkCallback")


class MpesaCallbackEnvelope(BaseModel):
    body: MpesaCallbackBody = Field(alias="Body")


class MpesaAcknowledgement(BaseModel):
    ResultCode: int = 0
    ResultDesc: str = "Callback processed successfully"
