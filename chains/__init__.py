from chains.knowledge import create_entity_extraction_chain
