"""
Statement Prompt Templates.

LLM prompts for graph schema extraction, statement generation and
natural-language querying.
"""

from langchain_core.prompts import ChatPromptTemplate

from src.ingestion.state import GraphSchema

# =============================================================================
# Schema Extraction
# =============================================================================

SCHEMA_SYSTEM_PROMPT = (
    "You are a precise graph schema extraction system. Output only valid JSON, no other text."
)

SCHEMA_EXTRACTION_TEMPLATE = """You are a graph schema extraction expert. Analyze the following {document_type} document and extract a graph schema that represents the entities, their properties, and relationships.

Your task:
1. Identify all distinct node types (entity types) mentioned in the document
2. For each node type, identify its key properties (attributes, fields)
3. Identify relationship types between node types (how entities connect)

Output ONLY valid JSON in this exact format:
{{
  "nodes": {{
    "LabelName": ["property1", "property2", "property3"],
    "AnotherLabel": ["propA", "propB"]
  }},
  "relationships": [
    {{"type": "REL_TYPE_UPPER_SNAKE", "from": "SourceLabel", "to": "TargetLabel"}}
  ]
}}

## Rules
1. **No extra keys**: output only "nodes" and "relationships"
2. **Empty arrays if nothing found**: never use null
3. **No invented data**: only include what the document states or clearly implies
4. **One relationship per logical connection**: distinct semantics get distinct types
5. **Naming**: labels in PascalCase, relationship types in UPPER_SNAKE_CASE, properties in camelCase
6. **Business-meaningful relationships**: HELD_BY, HAS_ADDRESS, OWNS, ADVISES; not CONNECTS_TO or RELATED_TO
7. **Identifiers**: give every label an identifier property named after it (accountId for Account)

## Document Type Hints
{type_hint}

## Document Text
{text}
{reference_schema}
Output JSON only (no markdown, no explanations):"""

SCHEMA_EXTRACTION_PROMPT = ChatPromptTemplate.from_messages(
    [("system", SCHEMA_SYSTEM_PROMPT), ("human", SCHEMA_EXTRACTION_TEMPLATE)]
)

REFERENCE_SCHEMA_HINT = """
## Reference Schema (for guidance, adapt to your document)
Nodes:
{nodes}

Relationships:
{relationships}

Use this as a guide for naming conventions and structure, but extract what is actually in YOUR document.
"""

# =============================================================================
# Statement Generation
# =============================================================================

STATEMENT_SYSTEM_PROMPT = "Generate Cypher MERGE statements only. No explanations, no markdown."

RELATIONSHIP_EXAMPLES = (
    "Party --[HAS_ACCOUNT]--> Account",
    "Account --[HAS_ADDRESS]--> Address",
    "Account --[EXECUTED_TRADE]--> Trade",
    "Account --[HAS_POSITION]--> Position",
    "Account --[HAS_HOLDING]--> Holding",
    "Account --[HAS_INVESTMENT]--> Investment",
    "Trade --[ON_SECURITY]--> Security",
    "Investment --[IN_SECURITY]--> Security",
    "Position --[IN_SECURITY]--> Security",
    "Holding --[IN_SECURITY]--> Security",
)

STATEMENT_GENERATION_TEMPLATE = """Generate Cypher MERGE statements from this {document_type} document.

Schema:
Nodes: {node_types}
Relationships: {relationships}

Use business-meaningful relationship names. For financial and business documents:
{relationship_examples}
NOT generic names like CONNECTS_TO or RELATED_TO.

{type_hint}

Text:
{text}

## Rules
1. **Explicit nodes**: always MERGE (var:Label {{keyProperty: "value"}}) before linking it. Never create a node inline inside a relationship.
2. **Direction is subject to object**: (account)-[:HAS_POSITION]->(position), never (position)-[:HAS_POSITION]->(account).
3. **No redundant inverses**: use (party)-[:HAS_ACCOUNT]->(account), not also (account)-[:HELD_BY]->(party).
4. **Properties**: camelCase, consistent with the schema (securityId on Security, never productId). Do not invent values.
5. **Dates**: date("YYYY-MM-DD") only for ISO dates; skip anything else.
6. **Literals only in MERGE maps**: never MERGE (t:Trade {{securityId: s.securityId}}).
7. **Arrows**: write -> literally, never -&gt;.
8. **Output**: only Cypher, one statement per line, no markdown.

Example:
MERGE (party1:Party {{partyId: "P1", firstName: "John", lastName: "Doe"}})
MERGE (account1:Account {{accountId: "A1", accountType: "Checking"}})
MERGE (trade1:Trade {{tradeId: "T1", tradeAmount: 1000, tradeDate: date("2024-01-15")}})
MERGE (security1:Security {{securityId: "S1", securityType: "Stock"}})
MERGE (party1)-[:HAS_ACCOUNT]->(account1)
MERGE (account1)-[:EXECUTED_TRADE]->(trade1)
MERGE (trade1)-[:ON_SECURITY]->(security1)

Generate Cypher:"""

STATEMENT_GENERATION_PROMPT = ChatPromptTemplate.from_messages(
    [("system", STATEMENT_SYSTEM_PROMPT), ("human", STATEMENT_GENERATION_TEMPLATE)]
)

EMPTY_RESULT_REMINDER = "\n\nIMPORTANT: Generate Cypher MERGE statements now."

# =============================================================================
# Natural-Language Query
# =============================================================================

QUERY_SYSTEM_PROMPT = """You are an expert Neo4j Cypher query generator.
Your task is to convert natural language questions into valid, read-only Cypher queries.

## Graph Schema
{schema}

## Guidelines
1. **Use ONLY schema elements**: only use node labels, relationship types, and properties listed above
2. **Read only**: use MATCH, OPTIONAL MATCH, WITH, WHERE and RETURN; never CREATE, MERGE, SET, DELETE or REMOVE
3. **Case sensitivity**: use toLower() for case-insensitive string matching
4. **Limit results**: include LIMIT unless counting or aggregating

## Output Format
Return ONLY the Cypher query. No explanations, no markdown formatting, no backticks."""

QUERY_PROMPT = ChatPromptTemplate.from_messages(
    [
        ("system", QUERY_SYSTEM_PROMPT),
        ("human", "Question: {question}\n\nGenerate the Cypher query:"),
    ]
)


# =============================================================================
# Formatting
# =============================================================================


def render_prompt(prompt: ChatPromptTemplate, **values: str) -> tuple[str, str]:
    """Render a system + human template into ``(system_prompt, user_prompt)``."""
    messages = prompt.format_messages(**values)
    return str(messages[0].content), str(messages[1].content)


def truncate_text(text: str, max_chars: int, marker: str = "[... text continues ...]") -> str:
    if len(text) <= max_chars:
        return text
    return f"{text[:max_chars]}\n{marker}"


def format_node_types(schema: GraphSchema, separator: str = " | ") -> str:
    return separator.join(f"{label}: [{', '.join(props)}]" for label, props in schema.nodes.items())


def format_relationships(schema: GraphSchema, separator: str = " | ") -> str:
    return separator.join(
        f"{r.from_label} --[{r.type}]--> {r.to_label}" for r in schema.relationships
    )


def format_reference_schema(schema: GraphSchema) -> str:
    nodes = "\n".join(f"  - {label}: [{', '.join(props)}]" for label, props in schema.nodes.items())
    relationships = "\n".join(
        f"  - {r.from_label} --[{r.type}]--> {r.to_label}" for r in schema.relationships
    )
    return REFERENCE_SCHEMA_HINT.format(nodes=nodes, relationships=relationships)


def format_schema_for_query(schema: GraphSchema) -> str:
    """Format a document schema for the natural-language query prompt."""
    lines = ["### Node Labels"]
    for label, props in schema.nodes.items():
        if props:
            lines.append(f"(:{label}) - Properties: {', '.join(props)}")
        else:
            lines.append(f"(:{label})")

    lines.append("\n### Relationship Types")
    for rel in schema.relationships:
        lines.append(f"(:{rel.from_label})-[:{rel.type}]->(:{rel.to_label})")

    return "\n".join(lines)
