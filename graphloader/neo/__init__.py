# Neo4j store binding and error taxonomy
