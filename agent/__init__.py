"""
Agent — Núcleo conversacional de MILA.

Responde mensajes de WhatsApp de múltiples tenants con un agente que:
- Busca en la base de conocimiento del tenant (tool knowledge_search)
- Deriva a staff humano cuando corresponde (tool escalate_to_human)
- Mantiene un historial acotado por usuario
- Aplica rate limiting y responde con una disculpa fija ante fallas
"""
