"""API のリクエスト/レスポンスモデル。"""
