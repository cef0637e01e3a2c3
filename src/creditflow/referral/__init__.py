"""Referral invitations and inviter bonuses."""
