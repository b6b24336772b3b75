"""
Shared data models for adapters.

These mirror the raw payloads we receive from the social feed, the
transaction webhook and the market-data API.
"""

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class PostAuthor(BaseModel):
    """Author of a post as returned in a timeline page's includes."""
    id: str = Field(description="Account ID")
    username: str = Field(description="Handle (without @)")
    name: Optional[str] = Field(default=None, description="Display name")
    profile_image_url: Optional[str] = Field(default=None)


class Post(BaseModel):
    """
    A single post (tweet) from X.

    Attributes:
        id: Unique post ID
        author_id: ID of the posting account
        text: Full post text
        created_at: When the post was created
        referenced_post_ids: IDs of replied-to / quoted posts
        metrics: Engagement metrics (like_count, retweet_count, etc.)
    """
    id: str = Field(description="Unique post ID")
    author_id: Optional[str] = Field(default=None, description="ID of the posting account")
    text: str = Field(default="", description="Full post text")
    created_at: Optional[datetime] = Field(default=None, description="When the post was created")
    referenced_post_ids: List[str] = Field(default_factory=list, description="Replied-to / quoted post IDs")
    metrics: Dict[str, int] = Field(default_factory=dict, description="Engagement metrics")


class TimelinePage(BaseModel):
    """One page of a user timeline with its expansions."""
    posts: List[Post] = Field(default_factory=list)
    users: Dict[str, PostAuthor] = Field(default_factory=dict, description="Included users by ID")
    referenced_posts: Dict[str, Post] = Field(default_factory=dict, description="Included posts by ID")
    newest_id: Optional[str] = Field(default=None)


class TokenTransfer(BaseModel):
    """A token movement inside a webhook transaction."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    mint: Optional[str] = Field(default=None, description="Token mint address")
    token_name: Optional[str] = Field(default=None, alias="tokenName")
    token_symbol: Optional[str] = Field(default=None, alias="tokenSymbol")
    token_amount: float = Field(default=0.0, alias="tokenAmount")
    token_price: Optional[float] = Field(default=None, alias="tokenPrice", description="USD price at transfer time")


class NativeTransfer(BaseModel):
    """A native-asset (SOL) movement inside a webhook transaction."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    from_user_account: Optional[str] = Field(default=None, alias="fromUserAccount")
    to_user_account: Optional[str] = Field(default=None, alias="toUserAccount")
    amount: float = Field(default=0.0)


class TransactionRecord(BaseModel):
    """One record of the transaction webhook payload."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    account: str = Field(description="Tracked wallet the record belongs to")
    type: Optional[str] = Field(default=None, description="Transaction type label")
    amount: Optional[float] = Field(default=None, description="Native-asset amount")
    native_transfers: Optional[List[NativeTransfer]] = Field(default=None, alias="nativeTransfers")
    token_transfers: Optional[List[TokenTransfer]] = Field(default=None, alias="tokenTransfers")
    signature: Optional[str] = Field(default=None)


class TokenInfo(BaseModel):
    """Token overview from the market-data API."""
    address: str
    symbol: Optional[str] = None
    name: Optional[str] = None
    price: Optional[float] = None
    market_cap: Optional[float] = None
    liquidity: Optional[float] = None
    holders: Optional[int] = None
    volume_24h: Optional[float] = None
    price_change_1h: Optional[float] = None
    price_change_24h: Optional[float] = None
    trades_24h: Optional[int] = None
    buys_24h: Optional[int] = None
    sells_24h: Optional[int] = None
    unique_wallets_24h: Optional[int] = None


__all__ = [
    "PostAuthor",
    "Post",
    "TimelinePage",
    "TokenTransfer",
    "NativeTransfer",
    "TransactionRecord",
    "TokenInfo",
]
