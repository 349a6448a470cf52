from datetime import datetime, timezone

from domain.base_types import AssetId, ConnectionId, UserId, WalletAddress, WalletId

USER = UserId("user-1")
OTHER_USER = UserId("user-2")

WALLET = WalletId("wallet-1")
SECOND_WALLET = WalletId("wallet-2")
FOREIGN_WALLET = WalletId("wallet-foreign")

WALLET_ADDRESS = WalletAddress("7xKXtg2CW87d97TXJSDpbD5jBkheTqA83TZRuJosgAsU")
SECOND_WALLET_ADDRESS = WalletAddress("9WzDXwBbmkg8ZTbNMqUxvQRAyrZzDsGYdLVL9zYtAWWM")
FOREIGN_ADDRESS = WalletAddress("HN7cABqLq46Es1jh92dQQisAq662SmxELLLsHHe4YWrH")

CONNECTION = ConnectionId("binance-1")
OTHER_CONNECTION = ConnectionId("okx-1")

SOL = AssetId("So11111111111111111111111111111111111111112")
USDC = AssetId("EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v")
BONK = AssetId("DezXAZ8z7PnrnRJjz3wXBoRgixCa6xjnB7YaB1pPB263")
USDC_ETHEREUM = AssetId("0xa0b86991c6218b36c1d19d4a2e9eb0ce3606eb48")

T0 = datetime(2024, 3, 1, 12, 0, 0, tzinfo=timezone.utc)
